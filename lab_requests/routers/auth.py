from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from lab_requests.database import get_db
from lab_requests.errors import Unauthorized
from lab_requests.models.user import User
from lab_requests.routers.deps import get_bearer_token, get_current_user, get_permissions
from lab_requests.schemas.user import AuthResponse, LoginRequest, UserResponse
from lab_requests.services.auth import authenticate, create_session, revoke_session
from lab_requests.services.permissions import GrantedPermissions, permissions_for_user, resolve_capabilities

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _user_response(user: User, permissions: GrantedPermissions) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        full_name=user.full_name,
        capabilities=sorted(c.value for c in resolve_capabilities(permissions)),
    )


@router.post("/login", response_model=AuthResponse)
def login(payload: LoginRequest, db: Session = Depends(get_db)):
    user = authenticate(db, payload.email, payload.password)
    if user is None:
        raise Unauthorized("Invalid credentials")

    session = create_session(db, user)
    return AuthResponse(token=session.id, user=_user_response(user, permissions_for_user(db, user)))


@router.post("/logout")
def logout(token: str = Depends(get_bearer_token), db: Session = Depends(get_db)):
    revoke_session(db, token)
    return {"statusCode": 200, "message": "Logged out", "data": None}


@router.get("/me", response_model=UserResponse)
def me(
    current_user: User = Depends(get_current_user),
    permissions: GrantedPermissions = Depends(get_permissions),
):
    return _user_response(current_user, permissions)
