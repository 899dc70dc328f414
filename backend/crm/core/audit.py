"""Audit logging utilities."""

from __future__ import annotations

import json
from typing import Any, Optional

from fastapi import Request
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession

from crm.models.audit_log import AuditLog


def client_addr(request: Optional[Request]) -> Optional[str]:
    return request.client.host if request is not None and request.client else None


async def log_audit(
    session: AsyncSession,
    user_code: str,
    entity: str,
    entity_id: Optional[Any],
    action: str,
    details: Optional[dict[str, Any]] = None,
    remote_addr: Optional[str] = None,
    *,
    independent_txn: bool = False,
) -> None:
    """Append an audit row.

    With ``independent_txn`` the row is committed in its own session on the
    same engine, so read-only endpoints leave the caller's session untouched.
    """

    payload = {
        "user_code": user_code,
        "entity": entity,
        "entity_id": str(entity_id) if entity_id is not None else None,
        "action": action,
        "details": json.dumps(details, default=str) if details is not None else None,
        "remote_addr": remote_addr,
    }
    if independent_txn:
        async with AsyncSession(bind=session.bind, expire_on_commit=False) as audit_session:
            async with audit_session.begin():
                await audit_session.execute(insert(AuditLog).values(**payload))
        return

    await session.execute(insert(AuditLog).values(**payload))
