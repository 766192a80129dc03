"""Custom exceptions for the transcode gateway.

Every error that can reach a client derives from ``GatewayError`` and carries
a machine-readable code, an HTTP status and a short human-readable message.
The exception handlers in ``gateway.main`` turn them into plain-text
responses.
"""

from typing import Any

from gateway.constants.error_codes import get_error_spec


class GatewayError(Exception):
    """Base exception for all gateway errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    message: str = "Internal error"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return bool(get_error_spec(self.code).get("retryable", False))

    @property
    def suggested_fix(self) -> str | None:
        return get_error_spec(self.code).get("suggested_fix")

    def to_headers(self) -> dict[str, str]:
        """Response headers describing this error."""
        headers = {
            "X-Error-Code": self.code,
            "X-Retryable": "true" if self.retryable else "false",
        }
        if self.suggested_fix:
            headers["X-Suggested-Fix"] = self.suggested_fix
        return headers


# =============================================================================
# Validation Errors (400)
# =============================================================================


class ValidationError(GatewayError):
    """Base class for validation errors."""

    code = "VALIDATION_ERROR"
    status_code = 400
    message = "Invalid request"


class MissingUploadError(ValidationError):
    """No source file was attached."""

    code = "MISSING_UPLOAD"
    message = "No video uploaded"


class MissingFieldError(ValidationError):
    """Required field is missing."""

    code = "MISSING_REQUIRED_FIELD"
    message = "Required field is missing"

    def __init__(self, field: str | None = None):
        self.field = field
        message = f"Required field is missing: {field}" if field else self.message
        super().__init__(message)


class InvalidFieldValueError(ValidationError):
    """Field value is invalid."""

    code = "INVALID_FIELD_VALUE"
    message = "Invalid field value"

    def __init__(self, message: str | None = None, *, field: str | None = None, value: Any = None):
        self.field = field
        msg = message or self.message
        if message is None and field:
            msg = f"Invalid value for field '{field}'"
            if value is not None:
                msg += f": {value}"
        super().__init__(msg)


class UnsupportedFormatError(ValidationError):
    """Requested output container is not in the allow-list."""

    code = "UNSUPPORTED_FORMAT"
    message = "unsupported format"

    def __init__(self, output_format: str | None = None, allowed: list[str] | None = None):
        message = self.message
        if output_format:
            message = f"unsupported format: {output_format}"
            if allowed:
                message += f" (allowed: {', '.join(allowed)})"
        super().__init__(message)


class UnsafeOverlayTextError(ValidationError):
    """Overlay text contains characters that could break a filter expression."""

    code = "UNSAFE_OVERLAY_TEXT"
    message = "unsafe overlay text"


class InvalidSourceUrlError(ValidationError):
    """Remote source URL is malformed or uses an unsupported scheme."""

    code = "INVALID_SOURCE_URL"
    message = "Source URL must be an absolute http or https URL"


class UploadTooLargeError(ValidationError):
    """Upload exceeds the configured size limit."""

    code = "UPLOAD_TOO_LARGE"
    message = "Uploaded file is too large"

    def __init__(self, max_mb: int | None = None):
        message = f"Uploaded file exceeds {max_mb} MB" if max_mb else self.message
        super().__init__(message)


# =============================================================================
# Engine / Job Errors
# =============================================================================


class EngineNotFoundError(GatewayError):
    """The media engine binary is not available on this host."""

    code = "ENGINE_NOT_FOUND"
    status_code = 503
    message = "FFmpeg not found"


class EngineExecutionError(GatewayError):
    """The engine exited unsuccessfully.

    ``diagnostic`` holds the truncated tail of the engine log and is part of
    the message surfaced to the client.
    """

    code = "ENGINE_EXECUTION_FAILED"
    status_code = 500
    message = "Video processing failed"

    def __init__(self, diagnostic: str = "", *, return_code: int | None = None):
        self.diagnostic = diagnostic
        self.return_code = return_code
        message = self.message
        if diagnostic:
            message = f"{self.message}: {diagnostic}"
        super().__init__(message)


class SourceFetchError(GatewayError):
    """The remote source could not be fetched."""

    code = "SOURCE_FETCH_FAILED"
    status_code = 500
    message = "Failed to fetch remote source"


class JobCancelledError(GatewayError):
    """The job was cancelled before it completed (usually a client disconnect)."""

    code = "JOB_CANCELLED"
    status_code = 499
    message = "Job cancelled"


class JobTimeoutError(GatewayError):
    """The job exceeded its wall-clock limit."""

    code = "JOB_TIMEOUT"
    status_code = 504
    message = "Video processing timed out"


# =============================================================================
# System Errors (500)
# =============================================================================


class WorkspaceError(GatewayError):
    """Unexpected filesystem failure while allocating or releasing a workspace."""

    code = "WORKSPACE_ERROR"
    status_code = 500
    message = "Workspace error"


class InternalError(GatewayError):
    """Internal server error."""

    code = "INTERNAL_ERROR"
    status_code = 500
    message = "Internal error"
