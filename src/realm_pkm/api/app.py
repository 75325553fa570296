"""FastAPI application factory."""
import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from realm_pkm import __version__
from realm_pkm.api.routers import auth, graph, notes
from realm_pkm.config import config
from realm_pkm.exceptions import ErrorCode, RealmError
from realm_pkm.api.middleware import RequestTracingMiddleware, internal_error_body
from realm_pkm.observability import current_request_id, metrics, new_request_id
from realm_pkm.security.tokens import JwtTokenProvider
from realm_pkm.services.auth_service import AuthService
from realm_pkm.services.graph_service import GraphService
from realm_pkm.services.note_service import NoteService
from realm_pkm.services.relationship_service import RelationshipService
from realm_pkm.services.search_service import SearchService
from realm_pkm.storage.note_repository import NoteRepository
from realm_pkm.storage.user_repository import UserRepository

logger = logging.getLogger(__name__)


def _error_response(status_code: int, body: dict) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return JSONResponse(status_code=status_code, content=body, headers=headers)


async def handle_realm_error(request: Request, exc: RealmError) -> JSONResponse:
    status_code = exc.http_status
    if status_code >= 500:
        # Internal details stay in the log
        error_id = current_request_id() or new_request_id()
        logger.error(f"[{error_id}] {request.method} {request.url.path} failed: {exc}")
        return _error_response(status_code, internal_error_body(error_id))
    if status_code == 401:
        logger.info(f"Unauthorized {request.method} {request.url.path}: {exc.code.name}")
    return _error_response(status_code, exc.to_dict())


async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    return _error_response(
        400,
        {
            "error": "ValidationError",
            "code": ErrorCode.VALIDATION_FAILED.value,
            "code_name": ErrorCode.VALIDATION_FAILED.name,
            "message": first.get("msg", "Invalid request"),
            "details": {"field": field} if field else {},
        },
    )


async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    error_id = current_request_id() or new_request_id()
    logger.exception(f"[{error_id}] Unhandled error on {request.method} {request.url.path}")
    return _error_response(500, internal_error_body(error_id))


def create_app(engine: Optional[Any] = None) -> FastAPI:
    """Build the application and its services.

    Args:
        engine: SQLAlchemy engine to use. A new one is created from the
            configuration when omitted.
    """
    repository = NoteRepository(engine=engine)
    note_service = NoteService(repository=repository)
    relationship_service = RelationshipService(note_service)

    app = FastAPI(
        title="Realm PKM",
        description="Personal knowledge management with linked notes",
        version=__version__,
    )
    app.state.note_service = note_service
    app.state.relationship_service = relationship_service
    app.state.graph_service = GraphService(note_service, relationship_service)
    app.state.search_service = SearchService(note_service, relationship_service)
    app.state.auth_service = AuthService(
        UserRepository(repository.session_factory), JwtTokenProvider()
    )

    app.add_middleware(RequestTracingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
        allow_headers=["*"],
    )

    app.add_exception_handler(RealmError, handle_realm_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.add_exception_handler(Exception, handle_unexpected)

    app.include_router(auth.router)
    app.include_router(notes.router)
    app.include_router(graph.router)

    @app.get("/health")
    def health() -> dict:
        summary = metrics.get_summary()
        return {
            "status": "ok",
            "version": __version__,
            "uptime_seconds": round(summary["uptime_seconds"], 1),
            "total_operations": summary["total_operations"],
        }

    logger.info("Realm PKM application created")
    return app
