"""FastAPI dependencies: services from app state and the current user."""
import logging
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from realm_pkm.exceptions import AuthenticationError
from realm_pkm.models.schema import User
from realm_pkm.services.auth_service import AuthService
from realm_pkm.services.graph_service import GraphService
from realm_pkm.services.note_service import NoteService
from realm_pkm.services.relationship_service import RelationshipService
from realm_pkm.services.search_service import SearchService

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_note_service(request: Request) -> NoteService:
    return request.app.state.note_service


def get_relationship_service(request: Request) -> RelationshipService:
    return request.app.state.relationship_service


def get_graph_service(request: Request) -> GraphService:
    return request.app.state.graph_service


def get_search_service(request: Request) -> SearchService:
    return request.app.state.search_service


def get_bearer_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    """The raw token from ``Authorization: Bearer ...``.

    Raises:
        AuthenticationError: If the header is missing or not a bearer token.
    """
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Authentication required")
    return credentials.credentials


def get_current_user(
    token: str = Depends(get_bearer_token),
    auth_service: AuthService = Depends(get_auth_service),
) -> User:
    """Resolve the bearer token to an active user."""
    return auth_service.validate(token)
