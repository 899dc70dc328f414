from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from crm.core.audit import client_addr, log_audit
from crm.core.config import settings
from crm.core.db import get_session
from crm.core.db_errors import raise_on_duplicate
from crm.core.deps import get_current_user
from crm.core.logging import user_code_ctx_var
from crm.core.rate_limit import limiter
from crm.core.security import create_access_token, get_password_hash_async, verify_password_async
from crm.models.base import utcnow
from crm.models.user import User
from crm.schemas.auth import LoginRequest, RegisterRequest, TokenResponse, UserOut

router = APIRouter(prefix="/auth", tags=["auth"])

DUPLICATE_USER = "User with this email already exists"


def _token_response(user: User) -> TokenResponse:
    return TokenResponse(
        user=UserOut.model_validate(user),
        access_token=create_access_token(str(user.id), {"role": user.role}),
        expires_in=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


@router.post("/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
async def register(
    payload: RegisterRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> TokenResponse:
    existing = await session.scalar(select(User.id).where(User.email == payload.email))
    if existing:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=DUPLICATE_USER)

    user = User(
        name=payload.name.strip(),
        email=payload.email,
        password_hash=await get_password_hash_async(payload.password),
    )
    session.add(user)
    try:
        await session.flush()
    except IntegrityError as exc:
        await session.rollback()
        raise_on_duplicate(exc, DUPLICATE_USER)

    await log_audit(
        session,
        str(user.id),
        "auth",
        user.id,
        "REGISTER",
        remote_addr=client_addr(request),
    )
    await session.commit()
    return _token_response(user)


@router.post("/login", response_model=TokenResponse)
@limiter.limit(settings.LOGIN_RATE)
async def login(
    payload: LoginRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> TokenResponse:
    user = (
        await session.execute(select(User).where(User.email == payload.email))
    ).scalar_one_or_none()

    if (
        not user
        or not user.is_active
        or not await verify_password_async(payload.password, user.password_hash)
    ):
        if user:
            await log_audit(
                session,
                str(user.id),
                "auth",
                None,
                "LOGIN_FAILED",
                details={"reason": "invalid_credentials"},
                remote_addr=client_addr(request),
            )
            await session.commit()
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials"
        )

    # Only stamp last_login on successful login (do NOT touch updated_at here)
    now = utcnow()
    await session.execute(
        update(User)
        .where(User.id == user.id)
        .values(last_login=now, updated_at=User.updated_at)
        .execution_options(synchronize_session=False)
    )
    set_committed_value(user, "last_login", now)

    request.state.user_code = str(user.id)
    user_code_ctx_var.set(str(user.id))
    await log_audit(
        session,
        str(user.id),
        "auth",
        None,
        "LOGIN",
        remote_addr=client_addr(request),
    )
    await session.commit()
    return _token_response(user)


@router.get("/me", response_model=UserOut)
async def me(user: User = Depends(get_current_user)) -> UserOut:
    return UserOut.model_validate(user)
