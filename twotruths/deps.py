from typing import Optional

from fastapi import Request

from .auth import AdminAuthenticator, bearer_from_header
from .errors import AuthenticationRequired
from .service import GameService


def get_service(request: Request) -> GameService:
    return request.app.state.service


def get_authenticator(request: Request) -> AdminAuthenticator:
    return request.app.state.authenticator


def request_token(request: Request, body_session: Optional[str] = None) -> Optional[str]:
    """Admin bearer from the Authorization header, a `session` body field or `?session=`."""
    return (
        bearer_from_header(request.headers.get("authorization"))
        or body_session
        or request.query_params.get("session")
    )


def require_admin(request: Request) -> dict:
    identity = get_authenticator(request).authenticate(request_token(request))
    if identity is None:
        raise AuthenticationRequired()
    return identity
