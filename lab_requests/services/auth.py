import logging
import secrets
from datetime import datetime, timedelta

from passlib.context import CryptContext
from sqlalchemy.orm import Session

from lab_requests.config import settings
from lab_requests.models.user import User, UserSession

logger = logging.getLogger(__name__)

# pbkdf2_sha256 avoids native bcrypt backend incompatibilities across environments.
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def authenticate(db: Session, email: str, password: str) -> User | None:
    user = db.query(User).filter(User.email == email).first()
    if user is None or not pwd_context.verify(password, user.password_hash):
        logger.info("Rejected login for %s", email)
        return None
    return user


def create_session(db: Session, user: User) -> UserSession:
    issued_at = datetime.utcnow()
    session = UserSession(
        id=secrets.token_urlsafe(32),
        user_id=user.id,
        created_at=issued_at,
        expires_at=issued_at + timedelta(hours=settings.session_ttl_hours),
    )
    db.add(session)
    db.commit()
    return session


def revoke_session(db: Session, token: str) -> bool:
    session = db.get(UserSession, token)
    if session is None:
        return False
    db.delete(session)
    db.commit()
    return True


def get_user_from_token(db: Session, token: str) -> User | None:
    """Resolve a bearer token; expired sessions are removed on sight."""
    session = db.get(UserSession, token)
    if session is None:
        return None
    if session.expires_at < datetime.utcnow():
        db.delete(session)
        db.commit()
        return None
    return session.user
