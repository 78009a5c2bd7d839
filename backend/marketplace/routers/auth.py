from fastapi import APIRouter, Depends, HTTPException

from marketplace.auth import DEMO_PASSWORD, create_access_token, require_principal
from marketplace.models import AuthLoginRequest, AuthLoginResponse, AuthMeResponse, Principal

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=AuthLoginResponse)
def login(payload: AuthLoginRequest):
    user_id = payload.user_id.strip()
    if not user_id:
        raise HTTPException(status_code=400, detail="user_id is required")
    if payload.password != DEMO_PASSWORD:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token, expires_at = create_access_token(user_id=user_id, role=payload.role)
    return AuthLoginResponse(access_token=token, user_id=user_id, role=payload.role, expires_at=expires_at)


@router.get("/me", response_model=AuthMeResponse)
def me(principal: Principal = Depends(require_principal)):
    return AuthMeResponse(user_id=principal.user_id, role=principal.role)
