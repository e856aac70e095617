#!/usr/bin/env python3
"""
KEEL: Server Control Panel

HTTP gateway for the control panel core. Parses requests, authenticates the
session token, calls the file operations engine and maps the core's typed
errors onto HTTP status codes. All state lives in objects created by
``create_app`` and kept on ``app.state``.
"""

import argparse
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import AsyncIterator, Callable, List, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, File, Form, Query, Request, Response, UploadFile, status
from fastapi.responses import FileResponse, JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from credential_store import CredentialStore, make_password_context
from file_ops import FileOperations
from panel_config import AppConfig, load_config_from_file, parse_size
from panel_errors import Forbidden, InvalidCredentials, PanelError, SessionNotFound
from panel_models import FileEntry, PublicUser, Role, User
from path_resolver import PathResolver
from session_manager import SessionManager, SessionStore
from worker_pool import WorkerConfig, WorkerPool

logger = logging.getLogger(__name__)


# ============================================================================
# Request/Response Models
# ============================================================================

class LoginRequest(BaseModel):
    """Login request"""
    identifier: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class LoginResponse(BaseModel):
    session_token: str
    token_type: str = "bearer"
    expires_at: datetime
    user: PublicUser


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=8, max_length=72)


class CreateUserRequest(BaseModel):
    """Admin action: create a user"""
    identifier: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=8, max_length=72)
    role: Role = Role.USER


class RoleChangeRequest(BaseModel):
    role: Role


class PathRequest(BaseModel):
    path: str


class DirectoryListing(BaseModel):
    path: str
    entries: List[FileEntry]


class WriteRequest(BaseModel):
    """Editor save: replace a file with text content"""
    path: str
    content: str


class TextFile(BaseModel):
    path: str
    content: str
    entry: FileEntry


class RenameRequest(BaseModel):
    path: str
    new_name: str = Field(..., min_length=1, max_length=255)


class MoveRequest(BaseModel):
    source: str
    destination: str


# ============================================================================
# Authentication Dependencies
# ============================================================================

security_scheme = HTTPBearer(auto_error=False)


async def get_session_token(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_scheme)
) -> str:
    """Bearer header first, then the session cookie"""
    token = credentials.credentials if credentials else None
    if not token:
        token = request.cookies.get(request.app.state.config.security.cookie_name)
    if not token:
        raise SessionNotFound("no session token supplied")
    return token


async def get_current_user(request: Request, token: str = Depends(get_session_token)) -> User:
    return request.app.state.sessions.validate(token)


async def require_admin(current: User = Depends(get_current_user)) -> User:
    if current.role != Role.ADMIN:
        raise Forbidden(f"user {current.id} is not an admin")
    return current


# ============================================================================
# Helpers
# ============================================================================

async def iter_upload(upload: UploadFile, chunk_size: int) -> AsyncIterator[bytes]:
    """Read an uploaded file in chunks"""
    while True:
        chunk = await upload.read(chunk_size)
        if not chunk:
            break
        yield chunk


async def panel_error_handler(request: Request, exc: PanelError) -> JSONResponse:
    logger.warning(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.detail}")
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == status.HTTP_401_UNAUTHORIZED else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


# ============================================================================
# Routes
# ============================================================================

auth_router = APIRouter(prefix="/api/auth", tags=["Auth"])
users_router = APIRouter(prefix="/api/users", tags=["Users"])
files_router = APIRouter(prefix="/api/files", tags=["Files"])


@auth_router.post("/login", response_model=LoginResponse)
async def login(login_req: LoginRequest, request: Request, response: Response):
    """Verify credentials and open a session"""
    state = request.app.state
    user = await state.pool.submit_task(
        "login",
        state.credentials.verify,
        login_req.identifier,
        login_req.password,
        state.on_login_failure,
    )
    session = state.sessions.create(user.id)

    response.set_cookie(
        key=state.config.security.cookie_name,
        value=session.token,
        httponly=True,
        samesite="lax",
        max_age=state.config.security.session_ttl_seconds,
        path="/api",
    )
    return LoginResponse(
        session_token=session.token,
        expires_at=session.expires_at,
        user=user.public(),
    )


@auth_router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    token: str = Depends(get_session_token),
    user: User = Depends(get_current_user)
):
    """Revoke the current session"""
    request.app.state.sessions.revoke(token)
    response.delete_cookie(request.app.state.config.security.cookie_name, path="/api")
    return {"status": "logged_out"}


@auth_router.get("/me", response_model=PublicUser)
async def read_me(user: User = Depends(get_current_user)):
    return user.public()


@auth_router.post("/password")
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    user: User = Depends(get_current_user)
):
    """Change the caller's password; every session of the user is revoked"""
    state = request.app.state
    ok = await state.pool.submit_task("check-password", state.credentials.check_password, user.id, body.current_password)
    if not ok:
        raise InvalidCredentials(f"wrong current password for user {user.id}")

    await state.pool.submit_task("set-password", state.credentials.set_password, user.id, body.new_password)
    revoked = state.sessions.revoke_all(user.id)
    return {"status": "ok", "revoked_sessions": revoked}


@users_router.get("", response_model=List[PublicUser])
async def list_users(request: Request, admin: User = Depends(require_admin)):
    return [u.public() for u in request.app.state.credentials.list_users()]


@users_router.post("", response_model=PublicUser, status_code=status.HTTP_201_CREATED)
async def create_user(body: CreateUserRequest, request: Request, admin: User = Depends(require_admin)):
    state = request.app.state
    user = await state.pool.submit_task(
        "create-user", state.credentials.create_user, body.identifier, body.password, body.role
    )
    logger.info(f"Admin {admin.id} created user {user.id}")
    return user.public()


@users_router.patch("/{user_id}/role", response_model=PublicUser)
async def change_role(user_id: int, body: RoleChangeRequest, request: Request, admin: User = Depends(require_admin)):
    state = request.app.state
    user = await state.pool.submit_task("set-role", state.credentials.set_role, user_id, body.role)
    logger.info(f"Admin {admin.id} set role of user {user_id} to {body.role.value}")
    return user.public()


@files_router.get("", response_model=DirectoryListing)
async def list_files(
    request: Request,
    path: str = Query(""),
    user: User = Depends(get_current_user)
):
    """List a directory below the root"""
    files: FileOperations = request.app.state.files
    entries = await files.list(path)
    return DirectoryListing(path=files.resolver.relative(files.resolver.resolve(path)), entries=entries)


@files_router.post("/upload", response_model=FileEntry)
async def upload_file(
    request: Request,
    path: str = Form(...),
    file: UploadFile = File(...),
    size: Optional[int] = Form(None, ge=0),
    user: User = Depends(get_current_user)
):
    """Upload one file to ``path`` (overwrites an existing file)"""
    state = request.app.state
    declared = size if size is not None else file.size
    logger.info(f"User {user.id} uploading {path!r} (declared {declared} bytes)")
    try:
        return await state.files.upload(
            path,
            iter_upload(file, state.config.storage.chunk_size),
            declared_size=declared,
        )
    finally:
        await file.close()


@files_router.delete("")
async def delete_file(body: PathRequest, request: Request, user: User = Depends(get_current_user)):
    await request.app.state.files.delete(body.path)
    logger.info(f"User {user.id} deleted {body.path!r}")
    return {"status": "ok"}


@files_router.post("/mkdir", response_model=FileEntry, status_code=status.HTTP_201_CREATED)
async def make_directory(body: PathRequest, request: Request, user: User = Depends(get_current_user)):
    return await request.app.state.files.mkdir(body.path)


@files_router.get("/read", response_model=TextFile)
async def read_file(
    request: Request,
    path: str = Query(...),
    user: User = Depends(get_current_user)
):
    """Return a file's content as UTF-8 text"""
    files: FileOperations = request.app.state.files
    entry, content = await files.read_text(path)
    return TextFile(path=files.resolver.relative(files.resolver.resolve(path)), content=content, entry=entry)


@files_router.post("/write", response_model=FileEntry)
async def write_file(body: WriteRequest, request: Request, user: User = Depends(get_current_user)):
    """Save text content, replacing the file atomically"""
    entry = await request.app.state.files.write_text(body.path, body.content)
    logger.info(f"User {user.id} wrote {body.path!r}")
    return entry


@files_router.post("/rename", response_model=FileEntry)
async def rename_entry(body: RenameRequest, request: Request, user: User = Depends(get_current_user)):
    entry = await request.app.state.files.rename(body.path, body.new_name)
    logger.info(f"User {user.id} renamed {body.path!r} to {body.new_name!r}")
    return entry


@files_router.post("/move", response_model=FileEntry)
async def move_entry(body: MoveRequest, request: Request, user: User = Depends(get_current_user)):
    entry = await request.app.state.files.move(body.source, body.destination)
    logger.info(f"User {user.id} moved {body.source!r} to {body.destination!r}")
    return entry


@files_router.get("/download")
async def download_file(
    request: Request,
    path: str = Query(...),
    user: User = Depends(get_current_user)
):
    full_path, entry = await request.app.state.files.open_download(path)
    return FileResponse(
        path=str(full_path),
        filename=entry.name,
        media_type="application/octet-stream"
    )


# ============================================================================
# Application Factory
# ============================================================================

def create_app(
    config: Optional[AppConfig] = None,
    on_login_failure: Optional[Callable[[str], None]] = None
) -> FastAPI:
    """
    Build the application and every service it needs.

    Args:
        config: Application configuration; defaults are used when omitted
        on_login_failure: Optional attempt counter passed to credential checks

    Returns:
        Configured FastAPI application
    """
    config = config or AppConfig()

    pool = WorkerPool(WorkerConfig(
        max_workers=config.server.workers,
        task_timeout=config.server.task_timeout,
    ))
    credentials = CredentialStore(
        make_password_context(config.security.bcrypt_rounds),
        users_file=config.security.users_file,
    )
    credentials.ensure_admin(config.security.admin_identifier, config.security.admin_password)

    sessions = SessionManager(
        SessionStore(),
        credentials,
        ttl=timedelta(seconds=config.security.session_ttl_seconds),
    )
    files = FileOperations(
        PathResolver(config.storage.root_dir),
        pool,
        max_upload_bytes=config.storage.max_upload_bytes,
        allowed_extensions=config.storage.allowed_extensions,
        blocked_extensions=config.storage.blocked_extensions,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifespan - startup and shutdown"""
        await pool.start()
        yield
        await pool.shutdown(wait=True)

    app = FastAPI(
        title="KEEL - Server Control Panel",
        description="Authenticated file management for a single server root",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.config = config
    app.state.pool = pool
    app.state.credentials = credentials
    app.state.sessions = sessions
    app.state.files = files
    app.state.on_login_failure = on_login_failure

    app.add_exception_handler(PanelError, panel_error_handler)
    app.include_router(auth_router)
    app.include_router(users_router)
    app.include_router(files_router)
    return app


# ============================================================================
# CLI and Main
# ============================================================================

def configure_logging(level: str, log_file: Optional[str] = None):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    if log_file:
        handler = logging.FileHandler(log_file)
        handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        logging.getLogger().addHandler(handler)


# Command line flag -> (config section, field, converter)
CLI_OVERRIDES = {
    "host": ("server", "host", str),
    "port": ("server", "port", int),
    "workers": ("server", "workers", int),
    "root_dir": ("storage", "root_dir", str),
    "max_upload_size": ("storage", "max_upload_bytes", parse_size),
    "session_ttl": ("security", "session_ttl_seconds", int),
    "admin_identifier": ("security", "admin_identifier", str),
    "admin_password": ("security", "admin_password", str),
    "users_file": ("security", "users_file", str),
    "log_level": ("logging", "level", str),
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="KEEL - Server Control Panel")
    parser.add_argument("--config", type=str, help="Path to configuration file (YAML)")

    # Defaults live in AppConfig; a flag only wins when it is given
    parser.add_argument("--host", help="Host to bind to (default: 127.0.0.1)")
    parser.add_argument("--port", help="Port to bind to (default: 8196)")
    parser.add_argument("--workers", help="Number of worker threads (default: 16)")
    parser.add_argument("--root-dir", help="Directory managed by the panel (default: ./files)")
    parser.add_argument("--max-upload-size", help="Maximum upload size, e.g. 10MB (default: 10MB)")
    parser.add_argument("--session-ttl", help="Session lifetime in seconds (default: 86400)")
    parser.add_argument("--admin-identifier", help="Identifier of the admin created on first start (default: admin)")
    parser.add_argument("--admin-password", help="Password of the admin created on first start")
    parser.add_argument("--users-file", help="JSON file to persist users in (default: memory only)")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)"
    )
    return parser


def apply_cli_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    """Copy every flag that was given onto the configuration"""
    for flag, (section, field, convert) in CLI_OVERRIDES.items():
        value = getattr(args, flag, None)
        if value is not None:
            setattr(getattr(config, section), field, convert(value))
    return config


def main():
    """Main entry point"""
    args = build_parser().parse_args()

    config = load_config_from_file(args.config) if args.config else AppConfig()
    apply_cli_overrides(config, args)

    configure_logging(config.logging.level, config.logging.file)

    Path(config.storage.root_dir).mkdir(parents=True, exist_ok=True)
    app = create_app(config)

    logger.info("=" * 60)
    logger.info("KEEL - Server Control Panel")
    logger.info("=" * 60)
    logger.info(f"Listening on {config.server.host}:{config.server.port}")
    logger.info(f"Root directory: {app.state.files.resolver.root}")
    logger.info(f"Upload limit: {config.storage.max_upload_bytes} bytes")
    logger.info(f"Session lifetime: {config.security.session_ttl_seconds}s")
    logger.info(f"Worker threads: {config.server.workers}")
    logger.info(f"Users: {config.security.users_file or 'in memory'}")
    logger.info("=" * 60)

    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower()
    )


if __name__ == "__main__":
    main()
