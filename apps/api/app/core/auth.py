from dataclasses import dataclass, field

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    workspaces: list[str] = field(default_factory=list)


def _claim_list(payload: dict, key: str, default: list[str]) -> list[str]:
    value = payload.get(key, default)
    if not isinstance(value, list):
        return default
    return [str(item) for item in value]


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub="anonymous", roles=["guest"])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        # TODO: reject invalid tokens with 401 once the identity provider issues them.
        return AuthUser(sub="anonymous", roles=["guest"])

    subject = str(payload.get("sub", "anonymous"))
    request.state.user_id = subject
    return AuthUser(
        sub=subject,
        roles=_claim_list(payload, "roles", ["user"]),
        workspaces=_claim_list(payload, "workspaces", []),
    )
