"""FastAPI dependencies."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Header, Request

from berth.errors import InvalidToken
from berth.services import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_current_user(
    services: Annotated[Services, Depends(get_services)],
    authorization: Annotated[str | None, Header()] = None,
) -> str:
    """Resolve ``Authorization: Bearer <token>`` to a user id."""
    if not authorization:
        raise InvalidToken("No token provided")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise InvalidToken("Authorization header must be a bearer token")
    return services.verifier.verify(token.strip())


ServicesDep = Annotated[Services, Depends(get_services)]
CurrentUser = Annotated[str, Depends(get_current_user)]
