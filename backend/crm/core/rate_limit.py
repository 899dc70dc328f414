"""Rate limiting utilities using SlowAPI."""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address


def client_key(request: Request) -> str:
    """Limit per authenticated user when known, else per remote address."""

    user_code = getattr(request.state, "user_code", None)
    if user_code:
        return f"user:{user_code}"
    return get_remote_address(request)


limiter = Limiter(key_func=client_key)


def init_rate_limiter(app: FastAPI) -> None:
    """Attach the rate limiter and exception handler to the FastAPI app."""

    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)

    async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
        return JSONResponse(
            status_code=429,
            content={"detail": f"Too many requests: {exc.detail}"},
            headers={"Retry-After": "60"},
        )

    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
