"""Main FastAPI application for SecureShare."""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

import structlog
import uvicorn
from fastapi import Depends, FastAPI, File, Form, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from itsdangerous import BadSignature, URLSafeTimedSerializer
from pydantic import ValidationError as PydanticValidationError
from starlette.concurrency import run_in_threadpool

from secureshare.audit import LogQuery
from secureshare.config import Config, config as default_config
from secureshare.core import SecureShare
from secureshare.db import init_database, make_engine
from secureshare.errors import SecureShareError, ValidationError, secureshare_exception_handler
from secureshare.fileserver import ServedFile, ServeMode
from secureshare.logging import configure_logging
from secureshare.middleware import setup_middleware
from secureshare.models import LogCategory, utcnow
from secureshare.schemas import (
    ChangePasswordRequest, FileInfo, FileListResponse, FileUploadResponse, LoginRequest, LoginResponse,
    LogListResponse, PasswordResetRequest, RoleRequest, SettingsResponse, StatusRequest, StorageStats,
    SuccessResponse, UserCreateRequest, UserInfo, UserListResponse, UserUpdateRequest, VisibilityRequest,
)

logger = structlog.get_logger(__name__)

TOKEN_SALT = "secureshare.session"


class TokenSigner:
    """Signs session tokens before they leave the server."""

    def __init__(self, secret_key: str):
        self.serializer = URLSafeTimedSerializer(secret_key, salt=TOKEN_SALT)

    def sign(self, token: str) -> str:
        return self.serializer.dumps(token)

    def unsign(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        try:
            return self.serializer.loads(value)
        except BadSignature:
            logger.info("Rejected session value with a bad signature")
            return None


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
    message = f"Invalid value for '{field}': {first.get('msg', 'invalid input')}" if field else "Invalid input."
    return await secureshare_exception_handler(request, ValidationError(message))


async def sweep_sessions_task(core: SecureShare, interval: int):
    """Periodically remove expired sessions; lookups expire them lazily anyway."""
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await run_in_threadpool(core.sessions.sweep_expired)
            if removed:
                logger.info("Expired sessions swept", count=removed)
        except Exception:
            logger.exception("Session sweep failed")


def create_app(cfg: Optional[Config] = None) -> FastAPI:
    cfg = cfg or default_config
    engine = make_engine(cfg.database_url, echo=cfg.debug)
    core = SecureShare(engine, cfg)
    signer = TokenSigner(cfg.secret_key)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(cfg)
        init_database(engine, cfg, core.credentials)
        logger.info("SecureShare started", version=cfg.app_version, upload_dir=str(core.store.upload_root))
        sweeper = None
        if cfg.session_sweep_interval > 0:
            sweeper = asyncio.create_task(sweep_sessions_task(core, cfg.session_sweep_interval))
        yield
        if sweeper is not None:
            sweeper.cancel()
        engine.dispose()
        logger.info("SecureShare stopped")

    app = FastAPI(
        title=cfg.app_name,
        description="Session-authenticated file sharing with access control and audit",
        version=cfg.app_version,
        lifespan=lifespan,
    )
    app.state.core = core
    app.state.signer = signer

    setup_middleware(app)
    app.add_exception_handler(SecureShareError, secureshare_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, secureshare_exception_handler)

    # Dependency functions
    def client_ip(request: Request) -> Optional[str]:
        return request.client.host if request.client else None

    def session_token(request: Request) -> Optional[str]:
        """Session token from the bearer header, else from the cookie."""
        authorization = request.headers.get("authorization", "")
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return signer.unsign(value.strip())
        return signer.unsign(request.cookies.get(cfg.session_cookie_name))

    def file_response(served: ServedFile) -> Response:
        return Response(content=served.content, headers=served.headers)

    # Authentication endpoints
    @app.post("/api/auth/login", response_model=LoginResponse)
    def login(body: LoginRequest, request: Request, response: Response):
        result = core.login(body.username, body.password, client_ip(request), request.headers.get("user-agent"))
        signed = signer.sign(result.token)
        response.set_cookie(
            cfg.session_cookie_name,
            signed,
            max_age=core.settings.session_timeout_minutes * 60,
            httponly=True,
            secure=cfg.secure_cookies,
            samesite="strict",
        )
        return LoginResponse(
            success=True,
            message="Login successful",
            session_id=signed,
            user=UserInfo.model_validate(result.user),
            password_change_required=result.password_change_required,
        )

    @app.post("/api/auth/logout", response_model=SuccessResponse)
    def logout(request: Request, response: Response, token: Optional[str] = Depends(session_token)):
        core.logout(token, client_ip(request))
        response.delete_cookie(cfg.session_cookie_name)
        return SuccessResponse(success=True, message="Logged out successfully")

    @app.get("/api/auth/me", response_model=UserInfo)
    def me(token: Optional[str] = Depends(session_token)):
        return UserInfo.model_validate(core.current_user(token))

    @app.post("/api/auth/change-password", response_model=SuccessResponse)
    def change_password(body: ChangePasswordRequest, request: Request, token: Optional[str] = Depends(session_token)):
        core.change_password(token, body.current_password, body.new_password, client_ip(request))
        return SuccessResponse(success=True, message="Password changed successfully")

    # File management endpoints
    @app.get("/api/files", response_model=FileListResponse)
    def list_files(request: Request, scope: str = "mine", token: Optional[str] = Depends(session_token)):
        files = core.list_files(token, scope, client_ip(request))
        return FileListResponse(files=[FileInfo.model_validate(f) for f in files], total=len(files))

    @app.post("/api/files", response_model=FileUploadResponse, status_code=201)
    async def upload_file(
        request: Request,
        file: UploadFile = File(...),
        visibility: str = Form("private"),
        token: Optional[str] = Depends(session_token),
    ):
        data = await file.read()
        record = await run_in_threadpool(
            core.upload_file, token, data, file.filename, file.content_type, visibility, client_ip(request)
        )
        return FileUploadResponse(success=True, message="File uploaded successfully", file=FileInfo.model_validate(record))

    @app.get("/api/files/stats", response_model=StorageStats)
    def storage_stats(token: Optional[str] = Depends(session_token)):
        return StorageStats(**core.storage_stats(token))

    @app.put("/api/files/{file_id}/visibility", response_model=FileInfo)
    def toggle_visibility(file_id: int, body: VisibilityRequest, request: Request,
                          token: Optional[str] = Depends(session_token)):
        record = core.toggle_visibility(token, file_id, body.visibility, client_ip(request))
        return FileInfo.model_validate(record)

    @app.delete("/api/files/{file_id}", response_model=SuccessResponse)
    def delete_file(file_id: int, request: Request, token: Optional[str] = Depends(session_token)):
        core.delete_file(token, file_id, client_ip(request))
        return SuccessResponse(success=True, message="File deleted successfully")

    @app.get("/api/files/{file_id}/download")
    def download_file(file_id: int, request: Request, token: Optional[str] = Depends(session_token)):
        return file_response(core.download_or_preview(token, file_id, ServeMode.DOWNLOAD, client_ip(request)))

    @app.get("/api/files/{file_id}/preview")
    def preview_file(file_id: int, request: Request, token: Optional[str] = Depends(session_token)):
        return file_response(core.download_or_preview(token, file_id, ServeMode.PREVIEW, client_ip(request)))

    @app.get("/files/{file_path:path}")
    def serve_path(file_path: str, request: Request, preview: bool = False,
                   token: Optional[str] = Depends(session_token)):
        mode = ServeMode.PREVIEW if preview else ServeMode.DOWNLOAD
        return file_response(core.serve_path(token, file_path, mode, client_ip(request)))

    # User administration endpoints
    @app.get("/api/admin/users", response_model=UserListResponse)
    def list_users(request: Request, token: Optional[str] = Depends(session_token)):
        users = core.list_users(token, client_ip(request))
        return UserListResponse(users=[UserInfo.model_validate(u) for u in users], total=len(users))

    @app.post("/api/admin/users", response_model=UserInfo, status_code=201)
    def create_user(body: UserCreateRequest, request: Request, token: Optional[str] = Depends(session_token)):
        user = core.create_user(token, body.username, body.email, body.password, body.role, client_ip(request))
        return UserInfo.model_validate(user)

    @app.patch("/api/admin/users/{user_id}", response_model=UserInfo)
    def update_user(user_id: int, body: UserUpdateRequest, request: Request,
                    token: Optional[str] = Depends(session_token)):
        user = core.update_user(token, user_id, body.username, body.email, client_ip(request))
        return UserInfo.model_validate(user)

    @app.put("/api/admin/users/{user_id}/role", response_model=UserInfo)
    def change_role(user_id: int, body: RoleRequest, request: Request, token: Optional[str] = Depends(session_token)):
        return UserInfo.model_validate(core.change_role(token, user_id, body.role, client_ip(request)))

    @app.put("/api/admin/users/{user_id}/status", response_model=UserInfo)
    def set_status(user_id: int, body: StatusRequest, request: Request, token: Optional[str] = Depends(session_token)):
        return UserInfo.model_validate(core.set_user_status(token, user_id, body.status, client_ip(request)))

    @app.post("/api/admin/users/{user_id}/reset-password", response_model=SuccessResponse)
    def reset_password(user_id: int, body: PasswordResetRequest, request: Request,
                       token: Optional[str] = Depends(session_token)):
        core.reset_password(token, user_id, body.new_password, client_ip(request))
        return SuccessResponse(success=True, message="Password reset successfully")

    @app.delete("/api/admin/users/{user_id}", response_model=SuccessResponse)
    def delete_user(user_id: int, request: Request, token: Optional[str] = Depends(session_token)):
        core.delete_user(token, user_id, client_ip(request))
        return SuccessResponse(success=True, message="User deleted successfully")

    # Audit and settings endpoints
    @app.get("/api/admin/logs", response_model=LogListResponse)
    def query_logs(
        request: Request,
        category: Optional[LogCategory] = None,
        user_id: Optional[int] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        search: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
        sort_by: str = "timestamp",
        sort_order: str = "desc",
        token: Optional[str] = Depends(session_token),
    ):
        try:
            filters = LogQuery(
                category=category, user_id=user_id, date_from=date_from, date_to=date_to, search=search,
                page=page, page_size=page_size, sort_by=sort_by, sort_order=sort_order,
            )
        except PydanticValidationError as exc:
            issue = exc.errors()[0]
            raise ValidationError(f"Invalid value for '{'.'.join(str(p) for p in issue['loc'])}': {issue['msg']}")
        logs, total = core.query_logs(token, filters, client_ip(request))
        return LogListResponse(logs=logs, total=total, page=filters.page, page_size=filters.page_size)

    @app.get("/api/admin/logs/categories", response_model=list)
    def log_categories(request: Request, token: Optional[str] = Depends(session_token)):
        return core.log_categories(token, client_ip(request))

    @app.get("/api/admin/settings", response_model=SettingsResponse)
    def get_settings(request: Request, token: Optional[str] = Depends(session_token)):
        return SettingsResponse(settings=core.get_settings(token, client_ip(request)))

    @app.put("/api/admin/settings", response_model=SettingsResponse)
    def update_settings(values: dict, request: Request, token: Optional[str] = Depends(session_token)):
        return SettingsResponse(settings=core.update_settings(token, values, client_ip(request)))

    # Health check endpoint
    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "timestamp": utcnow().isoformat()}

    return app


if __name__ == "__main__":
    uvicorn.run(
        "secureshare.main:create_app",
        factory=True,
        host=default_config.host,
        port=default_config.port,
        reload=default_config.debug,
    )
