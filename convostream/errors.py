"""
convostream - Error Classes

Error taxonomy for conversation, transport and streaming failures.

Synchronous calls raise these errors; streaming calls emit them on the
error channel of a StreamResults.
"""

import json
from typing import Any, Dict, Optional, Union


# Semantic categories for well-known API status codes.
# https://docs.anthropic.com/claude/reference/errors
STATUS_CATEGORIES: Dict[int, tuple] = {
    400: ("invalid_request_error", "There was an issue with the format or content of your request"),
    401: ("authentication_error", "There's an issue with your API key"),
    403: ("permission_error", "Your API key does not have permission to use the specified resource"),
    404: ("not_found_error", "The requested resource was not found"),
    413: ("request_too_large", "The request exceeds the maximum allowed number of bytes"),
    429: ("rate_limit_error", "Your account has hit a rate limit"),
    500: ("api_error", "An unexpected error has occurred internal to the provider's systems"),
    529: ("overloaded_error", "The API is temporarily overloaded"),
}


class ConvoStreamError(Exception):
    """
    Base exception for convostream.

    All library errors inherit from this class.

    Attributes:
        message: Human-readable error message
        code: Error code for programmatic handling
        status_code: HTTP status code if applicable
        retryable: Whether the caller may safely retry
        details: Additional error details
    """

    def __init__(
        self,
        message: str,
        code: str = "unknown",
        status_code: Optional[int] = None,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.retryable = retryable
        self.details = details or {}
        super().__init__(message)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code!r}, "
            f"status_code={self.status_code})"
        )


class ConfigurationError(ConvoStreamError):
    """
    Client configuration is incomplete or invalid.

    Raised at construction time when the API key or model is missing,
    or the model is not in the model table.
    """

    def __init__(self, message: str, code: str = "configuration_error", **kwargs):
        kwargs.pop("retryable", None)
        super().__init__(message=message, code=code, retryable=False, **kwargs)


class ValidationError(ConvoStreamError):
    """
    Content or request parameters are invalid.

    No network call has been made and conversation state is untouched.

    Attributes:
        param: The field or parameter that failed validation
    """

    def __init__(self, message: str, param: Optional[str] = None, **kwargs):
        kwargs.pop("retryable", None)
        super().__init__(
            message=message,
            code=kwargs.pop("code", "validation_error"),
            retryable=False,
            **kwargs
        )
        self.param = param


class MarshalingError(ConvoStreamError):
    """
    A request could not be encoded or a response/frame could not be decoded.

    Attributes:
        frame: Name of the SSE frame being decoded, if any
    """

    def __init__(self, message: str, frame: Optional[str] = None, **kwargs):
        kwargs.pop("retryable", None)
        super().__init__(
            message=message,
            code=kwargs.pop("code", "marshaling_error"),
            retryable=False,
            **kwargs
        )
        self.frame = frame


class StreamingError(ConvoStreamError):
    """
    The provider reported an error frame during streaming.

    Always terminal for the stream.

    Attributes:
        error_type: Provider error type from the frame (e.g. "overloaded_error")
    """

    def __init__(self, message: str, error_type: str = "", **kwargs):
        kwargs.pop("code", None)
        super().__init__(
            message=message,
            code="stream_error",
            retryable=kwargs.pop("retryable", error_type in ("overloaded_error", "api_error")),
            **kwargs
        )
        self.error_type = error_type


class PersistenceError(ConvoStreamError):
    """
    The conversation store could not be read, decoded or written.

    Attributes:
        path: Path of the store file, if any
    """

    def __init__(self, message: str, path: Optional[str] = None, **kwargs):
        kwargs.pop("retryable", None)
        super().__init__(
            message=message,
            code=kwargs.pop("code", "persistence_error"),
            retryable=False,
            **kwargs
        )
        self.path = path


# ============================================================
# Transport Errors
# ============================================================

class TransportError(ConvoStreamError):
    """
    HTTP exchange failed.

    Either the network failed or the API returned a non-2xx status.

    Attributes:
        body: Raw response body, if any
        url: Request URL
        category: Semantic category for the status code (e.g. "rate_limit_error")
        description: Human-readable description of the category
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[bytes] = None,
        url: str = "",
        **kwargs
    ):
        category, description = STATUS_CATEGORIES.get(status_code or 0, ("", ""))
        super().__init__(
            message=message,
            code=kwargs.pop("code", category or "transport_error"),
            status_code=status_code,
            retryable=kwargs.pop("retryable", status_code in (429, 500, 529)),
            **kwargs
        )
        self.body = body
        self.url = url
        self.category = category
        self.description = description

    @classmethod
    def from_response(
        cls,
        status_code: int,
        body: Optional[bytes] = None,
        url: str = "",
        headers: Optional[Dict[str, str]] = None
    ) -> "TransportError":
        """Create an error from a non-2xx HTTP response."""
        error_classes = {
            401: AuthenticationError,
            403: PermissionDeniedError,
            404: NotFoundError,
            413: RequestTooLargeError,
            429: RateLimitError,
            500: APIError,
            529: OverloadedError,
        }

        message = f"HTTP error: {status_code}"
        category = STATUS_CATEGORIES.get(status_code)
        if category:
            message += f": {category[0]}: {category[1]}"
        if url:
            message += f" for {url}"

        provider_message = _provider_message(body)
        if provider_message:
            message += f" ({provider_message})"

        error_class = error_classes.get(status_code, cls)
        if error_class is RateLimitError:
            retry_after = _retry_after((headers or {}).get("retry-after"))
            return RateLimitError(
                message, body=body, url=url, retry_after=retry_after
            )
        return error_class(message, status_code=status_code, body=body, url=url)


class AuthenticationError(TransportError):
    """API key is invalid or missing (401)."""

    def __init__(self, message: str = "Invalid API key", **kwargs):
        kwargs.setdefault("status_code", 401)
        super().__init__(message, **kwargs)


class PermissionDeniedError(TransportError):
    """API key lacks permission for the resource (403)."""

    def __init__(self, message: str = "Permission denied", **kwargs):
        kwargs.setdefault("status_code", 403)
        super().__init__(message, **kwargs)


class NotFoundError(TransportError):
    """Requested resource was not found (404)."""

    def __init__(self, message: str = "Not found", **kwargs):
        kwargs.setdefault("status_code", 404)
        super().__init__(message, **kwargs)


class RequestTooLargeError(TransportError):
    """Request body exceeds the allowed size (413)."""

    def __init__(self, message: str = "Request too large", **kwargs):
        kwargs.setdefault("status_code", 413)
        super().__init__(message, **kwargs)


class RateLimitError(TransportError):
    """
    Rate limit exceeded (429).

    Attributes:
        retry_after: Seconds the server asked the caller to wait, if given
    """

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: Optional[int] = None,
        **kwargs
    ):
        kwargs.setdefault("status_code", 429)
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class APIError(TransportError):
    """Unexpected internal error on the provider side (500)."""

    def __init__(self, message: str = "API error", **kwargs):
        kwargs.setdefault("status_code", 500)
        super().__init__(message, **kwargs)


class OverloadedError(TransportError):
    """Provider is temporarily overloaded (529)."""

    def __init__(self, message: str = "API overloaded", **kwargs):
        kwargs.setdefault("status_code", 529)
        super().__init__(message, **kwargs)


class ConnectionError(TransportError):
    """
    Failed to reach the API, or the connection dropped mid-stream.

    This error occurs when:
    - Network is unavailable
    - DNS resolution fails
    - Connection is refused or reset
    - A stream ends before its terminal frame
    """

    def __init__(self, message: str = "Failed to connect to API", **kwargs):
        kwargs.pop("code", None)
        kwargs.pop("retryable", None)
        super().__init__(message, code="connection_error", retryable=True, **kwargs)


class TimeoutError(ConnectionError):
    """Request timed out."""

    def __init__(self, message: str = "Request timed out", **kwargs):
        super().__init__(message, **kwargs)
        self.code = "timeout"


def is_retryable_error(error: Any) -> bool:
    """
    Check if an error is safe to retry.

    Advisory only: this library never retries on its own.

    Args:
        error: The error to check

    Returns:
        True if the error is retryable, False otherwise
    """
    if isinstance(error, ConvoStreamError):
        return error.retryable

    return False


def _provider_message(body: Optional[bytes]) -> str:
    """Extract error.message from a provider error body, if present."""
    if not body:
        return ""
    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return ""
    if not isinstance(data, dict):
        return ""
    error = data.get("error")
    if isinstance(error, dict):
        return str(error.get("message", ""))
    return ""


def _retry_after(value: Union[str, None]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None
