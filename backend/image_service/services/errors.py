"""Error taxonomy shared by the store, catalog, pipeline and service layer.

Every error carries the HTTP status the routes layer answers with, so the
FastAPI app registers a single exception handler for the whole family.
"""


class ImageServiceError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ImageServiceError):
    """Bad signature, disallowed type or malformed request. Caller-fixable."""

    status_code = 400


class NotFoundError(ImageServiceError):
    """Unknown identifier, or the artifact is missing from disk."""

    status_code = 404


class ProcessingError(ImageServiceError):
    """Decode, transform, encode or timeout failure in the pipeline."""

    status_code = 422


class QuotaExceededError(ImageServiceError):
    """Accepting the bytes would push the artifact roots past the disk quota."""

    status_code = 507


class PersistenceError(ImageServiceError):
    """Catalog snapshot or artifact file could not be read or written."""

    status_code = 503


def safe_error_message(e: Exception, fallback: str = "Processing interrupted") -> str:
    """Extract a meaningful error message from an exception.

    Some exceptions (timeouts in particular) produce an empty str(e).
    This helper falls back to the exception class name.
    """
    msg = str(e).strip()
    if not msg:
        msg = f"{type(e).__name__}: {fallback}"
    return msg
