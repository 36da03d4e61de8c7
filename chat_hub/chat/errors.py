"""把异常转换为可展示给用户的错误描述。"""

import re
from typing import Optional

from chat_hub.domain.exceptions import (
    ApiError,
    AuthenticationError,
    BusinessError,
    ConnectionUnavailableError,
    NetworkError,
    ProtocolError,
    RateLimitError,
)

EMPTY_RESPONSE_TEXT = (
    "The model returned an empty response. The server may have closed the "
    "connection prematurely. Try sending the message again."
)
GENERIC_ERROR_TEXT = "Something went wrong while generating a response. Please try again."
NO_CONNECTION_TEXT = "No backend connection configured. Add one in Settings."
TIMEOUT_TEXT = "Request timed out. Try again or increase the timeout in Settings."

_PREFIX = re.compile(r"^(?:Exception|Error):\s*")
_UNREACHABLE_HINTS = (
    "connection refused",
    "failed host lookup",
    "name or service not known",
    "network is unreachable",
    "no route to host",
    "all connection attempts failed",
)


def format_user_facing_error(exc: BaseException, endpoint: Optional[str] = None) -> str:
    location = f" at {endpoint}" if endpoint else ""

    if isinstance(exc, ConnectionUnavailableError):
        return NO_CONNECTION_TEXT
    if isinstance(exc, AuthenticationError):
        return "Authentication failed. Check the API key for this connection."
    if isinstance(exc, RateLimitError):
        return "The server is rate limiting requests. Wait a moment and try again."
    if isinstance(exc, ProtocolError):
        return f"The server{location} sent a response that could not be read."
    if isinstance(exc, NetworkError) and exc.code == "TIMEOUT":
        return TIMEOUT_TEXT

    raw = exc.message if isinstance(exc, BusinessError) else str(exc)
    cleaned = _PREFIX.sub("", (raw or "").strip())
    lower = cleaned.lower()

    if "timeout" in lower or "timed out" in lower:
        return TIMEOUT_TEXT
    if isinstance(exc, NetworkError) or any(hint in lower for hint in _UNREACHABLE_HINTS):
        return f"Cannot reach the model server{location}. Make sure it is running and reachable."
    if isinstance(exc, ApiError):
        if exc.code == "EMPTY_RESPONSE":
            return EMPTY_RESPONSE_TEXT
        detail = cleaned or GENERIC_ERROR_TEXT
        return f"The server returned an error ({exc.http_status}): {detail}"
    return cleaned or GENERIC_ERROR_TEXT
