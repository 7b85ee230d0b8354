"""Session tokens, password hashing and the per-request auth context"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional
from jose import JWTError, jwt
from passlib.context import CryptContext
import logging

from pharmacy_service.config import settings
from pharmacy_service.models.user import Role

logger = logging.getLogger(__name__)

# Actor id recorded when an unauthenticated visitor pays through a link
GUEST_ACTOR = "guest"

pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=settings.bcrypt_rounds,
)


@dataclass(frozen=True)
class AuthContext:
    """Identity of the caller, passed explicitly into every service call"""
    user_id: str
    role: Role
    email: str
    name: str = ""
    phone: Optional[str] = None

    def has_role(self, roles: Iterable[Role]) -> bool:
        return self.role in set(roles)


def actor_id(ctx: Optional[AuthContext]) -> str:
    """User id of the caller, or the guest sentinel"""
    return ctx.user_id if ctx else GUEST_ACTOR


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(ctx: AuthContext, expires_delta: Optional[timedelta] = None) -> str:
    """Create a signed JWT session carrying the auth context"""
    expire = datetime.utcnow() + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode = {
        "sub": ctx.user_id,
        "role": ctx.role.value,
        "email": ctx.email,
        "name": ctx.name,
        "phone": ctx.phone,
        "exp": expire,
    }
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Optional[AuthContext]:
    """Decode a session token; None when it is invalid or expired"""
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
        return AuthContext(
            user_id=payload["sub"],
            role=Role(payload["role"]),
            email=payload.get("email", ""),
            name=payload.get("name") or "",
            phone=payload.get("phone"),
        )
    except (JWTError, KeyError, ValueError) as e:
        logger.warning(f"Rejected session token: {e}")
        return None
