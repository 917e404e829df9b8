from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from automation_platform.config import settings
from automation_platform.core.security import create_access_token, get_current_user, verify_password
from automation_platform.schemas.auth import LoginRequest, LoginResponse, UserOut

router = APIRouter()


@router.post("/login", response_model=LoginResponse)
async def login(payload: LoginRequest) -> LoginResponse:
    email = payload.email.strip().lower()
    password_hash = settings.admin_password_hash.get_secret_value()
    if email != settings.admin_email.lower() or not password_hash:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
        )

    if not verify_password(payload.password, password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
        )

    user = UserOut(
        id="owner",
        email=settings.admin_email,
        name=settings.admin_name,
        organization_id=settings.admin_organization_id,
    )
    token = create_access_token(
        user.email, {"name": user.name, "uid": user.id, "org": user.organization_id}
    )
    return LoginResponse(access_token=token, user=user)


@router.get("/me", response_model=UserOut)
async def me(user: dict = Depends(get_current_user)) -> UserOut:
    return UserOut(**user)
