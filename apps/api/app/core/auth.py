import logging
from dataclasses import dataclass, field

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings


logger = logging.getLogger("app.auth")

ANONYMOUS_ROLES = ["guest"]


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    permissions: list[str] = field(default_factory=list)

    @property
    def is_anonymous(self) -> bool:
        return self.sub == "anonymous"


def _claim_list(payload: dict, name: str, default: list[str]) -> list[str]:
    value = payload.get(name, default)
    if isinstance(value, str):
        value = value.split()
    if not isinstance(value, list):
        return list(default)
    return [str(item) for item in value]


def decode_token(token: str) -> AuthUser:
    """Decode a bearer token; roles come from ``roles`` and grants from ``permissions``/``scope``."""
    settings = get_settings()
    payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    permissions = _claim_list(payload, "permissions", []) or _claim_list(payload, "scope", [])
    return AuthUser(
        sub=str(payload.get("sub", "anonymous")),
        roles=_claim_list(payload, "roles", ["user"]),
        permissions=permissions,
    )


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.removeprefix("Bearer ") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub="anonymous", roles=list(ANONYMOUS_ROLES))

    try:
        user = decode_token(token)
    except JWTError as exc:
        logger.warning("auth.invalid_token", extra={"error": str(exc)})
        return AuthUser(sub="anonymous", roles=list(ANONYMOUS_ROLES))

    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = user.sub
    return user
