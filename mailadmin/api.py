"""HTTP API for the webmail administration service."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .config import Settings, load_settings
from .database import Database
from .errors import MailAdminError, Unauthenticated, ValidationError
from .handlers import MAX_AUDIT_LOG_LIMIT, Handlers, build_handlers
from .models import Folder, Role, User
from .schemas import (
    AuditLogResponse,
    CreateDomainRequest,
    CreateEmailRequest,
    CreateUserRequest,
    DomainResponse,
    DomainStatusRequest,
    EmailResponse,
    EmailStatusRequest,
    HealthResponse,
    LoginRequest,
    MessageResponse,
    MoveEmailRequest,
    ResetPasswordRequest,
    UpdateUserRequest,
    UserResponse,
    UserStatsResponse,
    audit_entry_to_response,
    domain_to_response,
    email_to_response,
    field_errors,
    stats_to_response,
    user_to_response,
)
from .security import require_admin_or_above, require_authenticated, require_super_admin
from .sessions import SessionManager, authenticate, record_login

logger = logging.getLogger("mailadmin.api")

API_PREFIX = "/api"


def _error_body(exc: MailAdminError) -> dict:
    body: dict = {"message": exc.message}
    if isinstance(exc, ValidationError):
        body["errors"] = [error.to_dict() for error in exc.errors]
    return body


def register_exception_handlers(app: FastAPI) -> None:
    """Translate the service error taxonomy into stable JSON responses."""

    @app.exception_handler(MailAdminError)
    async def handle_service_error(_request: Request, exc: MailAdminError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc))

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(_request: Request, exc: RequestValidationError) -> JSONResponse:
        error = ValidationError(field_errors(list(exc.errors())))
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=_error_body(error))

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error while serving %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"message": "Internal server error"},
        )


def _build_principal_dependency(
    database: Database,
    session_manager: SessionManager,
    cookie_name: str,
) -> Callable[..., Optional[User]]:
    def dependency(request: Request) -> Optional[User]:
        token = request.cookies.get(cookie_name)
        if not token:
            return None
        user_id = session_manager.resolve(token)
        if user_id is None:
            return None
        user = database.get_user(user_id)
        if user is None or not user.is_active:
            return None
        return user

    return dependency


def register_api_routes(
    app: FastAPI,
    database: Database,
    handlers: Handlers,
    *,
    session_manager: SessionManager,
    settings: Settings,
) -> None:
    """Expose the JSON API endpoints on the provided FastAPI application."""

    router = APIRouter(prefix=API_PREFIX)
    cookie_name = settings.cookie_name
    principal = _build_principal_dependency(database, session_manager, cookie_name)

    def authenticated(user: Optional[User] = Depends(principal)) -> User:
        return require_authenticated(user)

    def admin_or_above(user: Optional[User] = Depends(principal)) -> User:
        return require_admin_or_above(user)

    def super_admin(user: Optional[User] = Depends(principal)) -> User:
        return require_super_admin(user)

    def _issue_session_cookie(response: Response, token: str) -> None:
        response.set_cookie(
            cookie_name,
            token,
            max_age=session_manager.cookie_max_age,
            secure=settings.secure_cookies,
            httponly=True,
            samesite="lax",
            path="/",
        )

    @router.get("/health", response_model=HealthResponse)
    def healthcheck() -> HealthResponse:
        return HealthResponse(status="ok", timestamp=datetime.now(timezone.utc))

    @router.post("/login", response_model=UserResponse)
    def login(
        payload: LoginRequest,
        request: Request,
        response: Response,
        background_tasks: BackgroundTasks,
    ) -> UserResponse:
        try:
            user = authenticate(database, payload.username, payload.password)
        except Unauthenticated:
            logger.warning("Failed login attempt for %s", payload.username)
            raise

        existing_token = request.cookies.get(cookie_name)
        if existing_token:
            session_manager.destroy(existing_token)

        token = session_manager.create(user.id)
        background_tasks.add_task(record_login, database, user.id)
        _issue_session_cookie(response, token)
        logger.info("User %s signed in", user.id)
        return user_to_response(user)

    @router.post("/logout", response_model=MessageResponse)
    def logout(request: Request, response: Response) -> MessageResponse:
        token = request.cookies.get(cookie_name)
        if token:
            session_manager.destroy(token)
        response.delete_cookie(cookie_name, path="/")
        return MessageResponse(message="Logged out")

    @router.get("/user", response_model=UserResponse)
    def current_user(user: User = Depends(authenticated)) -> UserResponse:
        return user_to_response(handlers.users.get_current(user))

    @router.get("/users", response_model=List[UserResponse])
    def list_users(
        role: Optional[Role] = Query(default=None),
        search: Optional[str] = Query(default=None, max_length=100),
        user: User = Depends(admin_or_above),
    ) -> List[UserResponse]:
        users = handlers.users.list_users(user, role=role, search=search)
        return [user_to_response(item) for item in users]

    @router.get("/users/stats", response_model=UserStatsResponse)
    def user_stats(user: User = Depends(admin_or_above)) -> UserStatsResponse:
        return stats_to_response(handlers.users.get_user_stats(user))

    @router.post("/users", status_code=status.HTTP_201_CREATED, response_model=UserResponse)
    def create_user(payload: CreateUserRequest, user: User = Depends(super_admin)) -> UserResponse:
        return user_to_response(handlers.users.create_user(user, payload))

    @router.patch("/users/{user_id}", response_model=UserResponse)
    def update_user(
        user_id: str,
        payload: UpdateUserRequest,
        user: User = Depends(admin_or_above),
    ) -> UserResponse:
        return user_to_response(handlers.users.update_user(user, user_id, payload))

    @router.post("/users/{user_id}/password", response_model=UserResponse)
    def reset_password(
        user_id: str,
        payload: ResetPasswordRequest,
        user: User = Depends(super_admin),
    ) -> UserResponse:
        return user_to_response(handlers.users.reset_password(user, user_id, payload.password))

    @router.get("/emails", response_model=List[EmailResponse])
    def list_emails(
        folder: Folder = Query(default=Folder.INBOX),
        user: User = Depends(authenticated),
    ) -> List[EmailResponse]:
        return [email_to_response(item) for item in handlers.messages.list_for_owner(user, folder)]

    @router.post("/emails", status_code=status.HTTP_201_CREATED, response_model=EmailResponse)
    def send_email(payload: CreateEmailRequest, user: User = Depends(authenticated)) -> EmailResponse:
        return email_to_response(handlers.messages.send(user, payload))

    @router.patch("/emails/{email_id}/status", response_model=EmailResponse)
    def update_email_status(
        email_id: str,
        payload: EmailStatusRequest,
        user: User = Depends(authenticated),
    ) -> EmailResponse:
        return email_to_response(handlers.messages.set_status(user, email_id, payload))

    @router.patch("/emails/{email_id}/folder", response_model=EmailResponse)
    def move_email(
        email_id: str,
        payload: MoveEmailRequest,
        user: User = Depends(authenticated),
    ) -> EmailResponse:
        return email_to_response(handlers.messages.move(user, email_id, payload.folder))

    @router.get("/domains", response_model=List[DomainResponse])
    def list_domains(user: User = Depends(super_admin)) -> List[DomainResponse]:
        return [domain_to_response(item) for item in handlers.domains.list_domains(user)]

    @router.post("/domains", status_code=status.HTTP_201_CREATED, response_model=DomainResponse)
    def create_domain(payload: CreateDomainRequest, user: User = Depends(super_admin)) -> DomainResponse:
        return domain_to_response(handlers.domains.create_domain(user, payload))

    @router.patch("/domains/{domain_id}/status", response_model=DomainResponse)
    def update_domain_status(
        domain_id: str,
        payload: DomainStatusRequest,
        user: User = Depends(super_admin),
    ) -> DomainResponse:
        return domain_to_response(handlers.domains.set_domain_active(user, domain_id, payload.is_active))

    @router.get("/audit-logs", response_model=List[AuditLogResponse])
    def list_audit_logs(
        limit: Optional[int] = Query(default=None, ge=1, le=MAX_AUDIT_LOG_LIMIT),
        user: User = Depends(admin_or_above),
    ) -> List[AuditLogResponse]:
        entries = handlers.audit_logs.list_audit_logs(user, limit)
        return [audit_entry_to_response(entry) for entry in entries]

    app.include_router(router)


def create_app(
    *,
    settings: Settings | None = None,
    database: Database | None = None,
) -> FastAPI:
    """Instantiate the FastAPI application for the webmail administration API."""

    app_settings = settings or load_settings()
    db = database or Database(app_settings.database_path)
    db.initialize()

    if not app_settings.secure_cookies:
        logger.warning(
            "Session cookies are not marked as secure. Only disable secure cookies for"
            " local development."
        )
    if not app_settings.strict_audit:
        logger.warning("Strict audit mode is disabled; mutations may commit without an audit entry.")

    app = FastAPI(
        title="Mail Admin API",
        version="0.1.0",
        description="Role-based administration of webmail users, domains and messages.",
    )
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=app_settings.trusted_proxy_hosts())

    session_manager = SessionManager(db, ttl=timedelta(hours=app_settings.session_ttl_hours))
    handlers = build_handlers(db, app_settings)

    app.state.settings = app_settings
    app.state.database = db
    app.state.session_manager = session_manager
    app.state.handlers = handlers

    register_exception_handlers(app)
    register_api_routes(app, db, handlers, session_manager=session_manager, settings=app_settings)
    return app


__all__ = ["API_PREFIX", "create_app", "register_api_routes", "register_exception_handlers"]
