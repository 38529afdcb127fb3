"""
Read the signed-in user from the stored access token.
The signature is not checked here: the API verifies every request, this only drives UI decisions
(who is signed in, which views a role may open).
"""
import logging
from dataclasses import dataclass

import jwt

logger = logging.getLogger(__name__)

ROLES = {"ADMIN", "MODERATOR", "DOCTOR", "PATIENT", "INSTITUTION"}


@dataclass
class SessionUser:
    id: str
    email: str | None
    role: str | None

    def has_role(self, *roles: str) -> bool:
        return self.role is not None and self.role in roles

    @property
    def is_admin(self) -> bool:
        return self.role == "ADMIN"


def decode_user(token: str | None) -> SessionUser | None:
    """Claims sub/email/role -> SessionUser; None for a missing or undecodable token."""
    if not token:
        return None
    try:
        payload = jwt.decode(token, options={"verify_signature": False, "verify_exp": False})
    except jwt.InvalidTokenError as e:
        logger.debug("token claims not readable: %s", e)
        return None
    sub = payload.get("sub")
    if sub is None:
        return None
    role = payload.get("role")
    if role is not None and role not in ROLES:
        logger.debug("unknown role claim %r", role)
    return SessionUser(id=str(sub), email=payload.get("email"), role=role)
