from dataclasses import dataclass, field

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str]


@dataclass
class ActorUser:
    """The person a mutation is attributed to (`changed_by` on every log row)."""

    user_id: str
    name: str | None = None
    roles: list[str] = field(default_factory=list)
    correlation_id: str | None = None

    def has_any_role(self, roles: set[str]) -> bool:
        return any(role.lower() in roles for role in self.roles)


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub="anonymous", roles=["guest"])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        subject = str(payload.get("sub", "anonymous"))
        roles = payload.get("roles", ["staff"])
        if not isinstance(roles, list):
            roles = ["staff"]
        return AuthUser(sub=subject, roles=[str(role) for role in roles])
    except JWTError:
        return AuthUser(sub="anonymous", roles=["guest"])
