"""
Error taxonomy for KEEL

Every failure the core reports is one of these exceptions. Each class carries
a stable ``code`` and an HTTP ``status_code`` so the gateway can map errors
without looking at messages, and a ``public_message`` that is safe to show to
clients. The optional ``detail`` passed at raise time is for logs only.
"""

from typing import Optional


class PanelError(Exception):
    """Base class for all KEEL errors"""
    code = "PANEL_ERROR"
    status_code = 500
    public_message = "Internal error"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.public_message
        super().__init__(self.detail)

    def to_dict(self) -> dict:
        return {"code": self.code, "detail": self.public_message}


# ============================================================================
# Authentication
# ============================================================================

class AuthError(PanelError):
    code = "AUTH_ERROR"
    status_code = 401
    public_message = "Authentication failed"


class InvalidCredentials(AuthError):
    # Same message for unknown identifier and wrong password
    code = "INVALID_CREDENTIALS"
    public_message = "Invalid identifier or password"


class Forbidden(AuthError):
    code = "FORBIDDEN"
    status_code = 403
    public_message = "Not enough rights"


class UserExists(AuthError):
    code = "USER_EXISTS"
    status_code = 409
    public_message = "User already exists"


class UserNotFound(AuthError):
    code = "USER_NOT_FOUND"
    status_code = 404
    public_message = "User not found"


# ============================================================================
# Sessions
# ============================================================================

class SessionError(PanelError):
    code = "SESSION_ERROR"
    status_code = 401
    public_message = "Invalid session"


class SessionNotFound(SessionError):
    code = "SESSION_NOT_FOUND"
    public_message = "Invalid session"


class SessionExpired(SessionError):
    code = "SESSION_EXPIRED"
    public_message = "Session has expired"


# ============================================================================
# Paths
# ============================================================================

class PathError(PanelError):
    code = "PATH_ERROR"
    status_code = 400
    public_message = "Invalid path"


class PathTraversal(PathError):
    # Never say whether the path was outside the root or merely missing
    code = "PATH_TRAVERSAL"
    status_code = 403
    public_message = "Access denied"


class InvalidPathInput(PathError):
    code = "INVALID_PATH"
    public_message = "Invalid path"


# ============================================================================
# File operations
# ============================================================================

class FileOpError(PanelError):
    code = "FILE_OP_ERROR"
    status_code = 500
    public_message = "File operation failed"


class FileNotFound(FileOpError):
    code = "NOT_FOUND"
    status_code = 404
    public_message = "File or directory not found"


class NotADirectory(FileOpError):
    code = "NOT_A_DIRECTORY"
    status_code = 409
    public_message = "Path is not a directory"


class IsADirectory(FileOpError):
    code = "IS_A_DIRECTORY"
    status_code = 409
    public_message = "Path is a directory"


class AlreadyExists(FileOpError):
    code = "ALREADY_EXISTS"
    status_code = 409
    public_message = "Path already exists"


class PayloadTooLarge(FileOpError):
    code = "PAYLOAD_TOO_LARGE"
    status_code = 413
    public_message = "File too large"


class ExtensionNotAllowed(FileOpError):
    code = "EXTENSION_NOT_ALLOWED"
    status_code = 415
    public_message = "File extension not allowed"


class IOFailure(FileOpError):
    code = "IO_FAILURE"
    status_code = 500
    public_message = "Storage operation failed"


class NotTextFile(FileOpError):
    code = "NOT_TEXT"
    status_code = 415
    public_message = "File is not valid text"
