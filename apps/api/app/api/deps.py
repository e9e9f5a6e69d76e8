from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from urllib.parse import unquote

from fastapi import Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from app.context import get_correlation_id, set_actor_id
from app.core.auth import ActorUser, AuthUser, get_current_user


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(request: Request, exc: HTTPException, *, code: str) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=str(exc.detail),
        details=exc.detail,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=exc.status_code, content=payload.__dict__)


async def get_actor_user(request: Request, auth_user: AuthUser = Depends(get_current_user)) -> ActorUser:
    name_header = request.headers.get("x-actor-name")
    set_actor_id(auth_user.sub)
    return ActorUser(
        user_id=auth_user.sub,
        name=unquote(name_header) if name_header else None,
        roles=list(auth_user.roles),
        correlation_id=get_correlation_id() or getattr(request.state, "correlation_id", None),
    )


def require_authenticated(user: ActorUser) -> None:
    if user.user_id == "anonymous" or "guest" in {role.lower() for role in user.roles}:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required")
