from fastapi import Depends, Header
from sqlalchemy.orm import Session, sessionmaker

from lab_requests.database import get_db, get_session_factory
from lab_requests.errors import Unauthorized
from lab_requests.models.user import User
from lab_requests.services.auth import get_user_from_token
from lab_requests.services.permissions import GrantedPermissions, permissions_for_user
from lab_requests.services.stores import SqlLabRecordStore, SqlPatientLookup


def get_bearer_token(authorization: str | None = Header(default=None)) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme != "Bearer" or not token:
        raise Unauthorized("Missing or invalid Authorization header")
    return token


def get_current_user(token: str = Depends(get_bearer_token), db: Session = Depends(get_db)) -> User:
    user = get_user_from_token(db, token)
    if user is None:
        raise Unauthorized("Invalid or expired session")
    return user


def get_permissions(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> GrantedPermissions:
    return permissions_for_user(db, current_user)


def get_lab_store(session_factory: sessionmaker = Depends(get_session_factory)) -> SqlLabRecordStore:
    return SqlLabRecordStore(session_factory)


def get_patient_lookup(session_factory: sessionmaker = Depends(get_session_factory)) -> SqlPatientLookup:
    return SqlPatientLookup(session_factory)
