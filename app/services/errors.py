"""
Domain errors for the assessment-code lifecycle.

Every error carries a stable machine code, an HTTP status for the API layer
and a message that can be shown to the user as-is. The services raise these
without knowing about FastAPI; `app.main` renders them into the response
envelope.
"""

from __future__ import annotations


class PriveScreenError(Exception):
    """Base class for all recoverable domain failures."""

    status_code: int = 400
    code: str = "error"
    default_message: str = "The request could not be completed"

    def __init__(self, message: str | None = None, *, details: list[str] | None = None):
        self.message = message or self.default_message
        self.details = details or []
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# NotFound
# ---------------------------------------------------------------------------

class NotFoundError(PriveScreenError):
    status_code = 404
    code = "not_found"
    default_message = "Resource not found"


class CodeNotFound(NotFoundError):
    code = "code_not_found"
    default_message = "This code is not valid or has expired"


class CenterNotFound(NotFoundError):
    code = "center_not_found"
    default_message = "Diagnostic center not found or not active"


class InvalidTestStandard(NotFoundError):
    code = "invalid_test_standard"
    default_message = "The selected test is not available"


class UserNotFound(NotFoundError):
    code = "user_not_found"
    default_message = "User not found"


class ResultNotFound(NotFoundError):
    code = "result_not_found"
    default_message = "Test result not found"


# ---------------------------------------------------------------------------
# Expired
# ---------------------------------------------------------------------------

class ExpiredError(PriveScreenError):
    status_code = 410
    code = "expired"
    default_message = "This resource has expired"


class CodeExpired(ExpiredError):
    code = "code_expired"
    default_message = "This code is not valid or has expired"


# ---------------------------------------------------------------------------
# Conflict
# ---------------------------------------------------------------------------

class ConflictError(PriveScreenError):
    status_code = 409
    code = "conflict"
    default_message = "Resource conflict"


class AlreadyRedeemed(ConflictError):
    code = "already_redeemed"
    default_message = "This code has already been used"


class AlreadyClaimed(ConflictError):
    code = "already_claimed"
    default_message = "This code has already been claimed"


class CodeNotClaimed(ConflictError):
    code = "code_not_claimed"
    default_message = "This sponsored code has not been claimed by a patient yet"


class CodeNotRedeemed(ConflictError):
    code = "code_not_redeemed"
    default_message = "Results can only be submitted for a code that has been used at a center"


class DuplicateSubmission(ConflictError):
    code = "duplicate_submission"
    default_message = "Results have already been submitted for this code"


# ---------------------------------------------------------------------------
# Invalid input / access
# ---------------------------------------------------------------------------

class InvalidInput(PriveScreenError):
    status_code = 422
    code = "invalid_input"
    default_message = "Invalid input"


class AuthenticationError(PriveScreenError):
    status_code = 401
    code = "unauthenticated"
    default_message = "Could not validate credentials"


class Forbidden(PriveScreenError):
    status_code = 403
    code = "forbidden"
    default_message = "Permission denied"


class CodeGenerationError(PriveScreenError):
    """Raised when no unique code could be produced within the attempt budget."""

    status_code = 503
    code = "code_generation_failed"
    default_message = "Could not generate a unique code, please try again"
