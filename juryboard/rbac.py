"""
juryboard/rbac.py
Caller identity resolution

Tokens are issued by the external auth service and verified here. The
subject names one of three identities:

    admin:<admin_id>     -> Actor, checked by the permission resolver
    judge:<judge_id>     -> judge-backed voter
    public:<session>     -> anonymous voter

Public voters without a token are identified by X-Voter-Token, falling
back to the client address.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from juryboard.config import settings
from juryboard.database import get_db
from juryboard.errors import DeniedError, ErrorCode, UnauthorizedError
from juryboard.orm.permissions import Admin
from juryboard.services.permission_resolver import Actor
from juryboard.services.score_ledger import VoterIdentity

logger = logging.getLogger(__name__)

# ================= CONFIG =================

SECRET_KEY = settings.SECRET_KEY
ALGORITHM = settings.JWT_ALGORITHM
ACCESS_TOKEN_EXPIRE_MINUTES = 30

bearer_scheme = HTTPBearer(auto_error=False)

SUBJECT_KINDS = ("admin", "judge", "public")


@dataclass(frozen=True)
class CallerIdentity:
    kind: str
    subject: str


# ================= TOKEN UTILS =================

def create_access_token(subject: str, expires_delta: Optional[timedelta] = None) -> str:
    """Issue a token for `subject` (e.g. "admin:3"). Used by local tooling and tests."""
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    return jwt.encode({"sub": subject, "exp": expire, "type": "access"}, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate JWT token"""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None


def parse_subject(sub: Optional[str]) -> Optional[CallerIdentity]:
    if not sub or ":" not in sub:
        return None
    kind, _, subject = sub.partition(":")
    if kind not in SUBJECT_KINDS or not subject:
        return None
    return CallerIdentity(kind=kind, subject=subject)


def identity_from_credentials(credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[CallerIdentity]:
    """None when no token was presented; UnauthorizedError when one was but is bad."""
    if credentials is None:
        return None
    payload = decode_token(credentials.credentials)
    if not payload or payload.get("type") != "access":
        raise UnauthorizedError("Invalid or expired token", code=ErrorCode.AUTH_INVALID)
    identity = parse_subject(payload.get("sub"))
    if identity is None:
        raise UnauthorizedError("Token subject not recognized", code=ErrorCode.AUTH_INVALID)
    return identity


# ================= AUTH DEPENDENCIES =================

async def get_current_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> Actor:
    """Admin caller. The role is always read from the database, never the token."""
    identity = identity_from_credentials(credentials)
    if identity is None:
        raise UnauthorizedError()
    if identity.kind != "admin" or not identity.subject.isdigit():
        raise DeniedError("Admin credentials required")

    admin = await db.get(Admin, int(identity.subject))
    if admin is None or not admin.is_active:
        raise UnauthorizedError("Admin account not found or inactive", code=ErrorCode.AUTH_INVALID)

    return Actor(admin_id=admin.id, role=admin.role)


async def get_optional_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> Optional[Actor]:
    """Admin caller if an admin token was presented, otherwise None."""
    if credentials is None:
        return None
    identity = identity_from_credentials(credentials)
    if identity.kind != "admin" or not identity.subject.isdigit():
        return None
    admin = await db.get(Admin, int(identity.subject))
    if admin is None or not admin.is_active:
        return None
    return Actor(admin_id=admin.id, role=admin.role)


async def get_voter_identity(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> VoterIdentity:
    identity = identity_from_credentials(credentials)

    if identity is None:
        token = request.headers.get("X-Voter-Token")
        if not token:
            token = request.client.host if request.client else None
        if not token:
            raise UnauthorizedError("Unable to identify voter")
        return VoterIdentity.for_public(token)

    if identity.kind == "judge":
        if not identity.subject.isdigit():
            raise UnauthorizedError("Malformed judge subject", code=ErrorCode.AUTH_INVALID)
        return VoterIdentity.for_judge(int(identity.subject))
    if identity.kind == "public":
        return VoterIdentity.for_public(identity.subject)

    raise DeniedError("Admins submit scores through the admin correction endpoint")


def voter_rate_key(request: Request) -> str:
    """slowapi key: one bucket per presented voter token, else per address."""
    token = request.headers.get("X-Voter-Token")
    if token:
        return f"voter:{token}"
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        return f"bearer:{auth[7:][-32:]}"
    return request.client.host if request.client else "unknown"
