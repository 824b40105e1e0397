"""Error taxonomy shared by the service layers.

Handlers in main.py turn these into `{"success": false, "message": ...}`
payloads; `detail` entries are merged into that payload.
"""
from typing import Any, Dict, List, Optional


class AppError(Exception):
    status_code = 500
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None, **detail: Any):
        self.message = message or self.message
        self.detail: Dict[str, Any] = detail
        super().__init__(self.message)

    def payload(self) -> Dict[str, Any]:
        return {"success": False, "message": self.message, **self.detail}


class ValidationError(AppError):
    status_code = 400
    message = "Validation failed"

    def __init__(self, message: Optional[str] = None, fields: Optional[List[str]] = None, **detail: Any):
        super().__init__(message, fields=fields or [], **detail)


class DuplicateEmail(ValidationError):
    message = "Email already registered"

    def __init__(self):
        super().__init__(fields=["email"])


# Authentication / authorization

class AuthError(AppError):
    status_code = 401


class Unauthenticated(AuthError):
    message = "No authentication token, access denied"


class InvalidCredential(AuthError):
    message = "Token is invalid or expired"


class UnknownSubject(AuthError):
    message = "Account no longer exists"


class Forbidden(AuthError):
    status_code = 403
    message = "Forbidden"


class ProfileNotFound(AuthError):
    status_code = 404
    message = "Collector profile not found"


class NotFoundError(AppError):
    status_code = 404
    message = "Not found"


class InvalidTransition(AppError):
    status_code = 400

    def __init__(self, current: str, attempted: str):
        super().__init__(f"Cannot change status from {current} to {attempted}",
                         current=current, attempted=attempted)
        self.current = current
        self.attempted = attempted


class InfrastructureError(AppError):
    status_code = 500
    message = "Service temporarily unavailable"
