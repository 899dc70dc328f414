# run_server.py
import uvicorn
from crm.main import app

if __name__ == "__main__":
    # Dashboard dev server proxies /api to this port
    uvicorn.run(
        app,
        host="127.0.0.1",
        port=5000,
        log_level="info",
    )
