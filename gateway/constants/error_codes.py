"""Error codes dictionary.

Single source of truth for every error code the gateway emits, whether a
client may retry it, and a short hint on how to fix the request.
"""

from typing import TypedDict


class ErrorCodeSpec(TypedDict, total=False):
    """Specification for an error code."""

    retryable: bool
    suggested_fix: str


ERROR_CODES: dict[str, ErrorCodeSpec] = {
    # ==========================================================================
    # Request validation (fix the request, then retry)
    # ==========================================================================
    "VALIDATION_ERROR": {
        "retryable": False,
        "suggested_fix": "Check the request fields against the endpoint documentation",
    },
    "MISSING_UPLOAD": {
        "retryable": False,
        "suggested_fix": "Attach the source file as the multipart field 'video'",
    },
    "MISSING_REQUIRED_FIELD": {
        "retryable": False,
        "suggested_fix": "Provide every required form field",
    },
    "INVALID_FIELD_VALUE": {
        "retryable": False,
        "suggested_fix": "Use a value within the documented range or character set",
    },
    "UNSUPPORTED_FORMAT": {
        "retryable": False,
        "suggested_fix": "Use one of the supported container extensions",
    },
    "UNSAFE_OVERLAY_TEXT": {
        "retryable": False,
        "suggested_fix": "Remove quotes, colons, backslashes and control characters from the text",
    },
    "INVALID_SOURCE_URL": {
        "retryable": False,
        "suggested_fix": "Provide an absolute http:// or https:// manifest URL",
    },
    "UPLOAD_TOO_LARGE": {
        "retryable": False,
        "suggested_fix": "Upload a smaller file",
    },
    # ==========================================================================
    # Engine and job errors
    # ==========================================================================
    "ENGINE_NOT_FOUND": {
        "retryable": False,
        "suggested_fix": "Install ffmpeg on the server or set FFMPEG_PATH",
    },
    "ENGINE_EXECUTION_FAILED": {
        "retryable": False,
        "suggested_fix": "Check that the source media is valid for the requested operation",
    },
    "SOURCE_FETCH_FAILED": {
        "retryable": True,
        "suggested_fix": "Check that the manifest URL is reachable from the server",
    },
    "JOB_CANCELLED": {
        "retryable": True,
    },
    "JOB_TIMEOUT": {
        "retryable": True,
        "suggested_fix": "Request a shorter clip or a smaller source",
    },
    # ==========================================================================
    # System errors
    # ==========================================================================
    "WORKSPACE_ERROR": {
        "retryable": True,
    },
    "INTERNAL_ERROR": {
        "retryable": True,
    },
}


def get_error_spec(code: str) -> ErrorCodeSpec:
    """Get the specification for an error code, or an empty spec if unknown."""
    return ERROR_CODES.get(code, {})
