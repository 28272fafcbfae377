import hmac
from typing import Mapping, Optional

from fastapi import Request

from .errors import UnauthorizedError

INTERNAL_TOKEN_HEADER = "X-Internal-Token"


def validate_internal_auth(headers: Mapping[str, str], expected: str) -> Optional[str]:
    """Return an error message when the internal token is missing or wrong, else None."""
    token = headers.get(INTERNAL_TOKEN_HEADER) or headers.get(INTERNAL_TOKEN_HEADER.lower())
    if not token:
        return f"Missing {INTERNAL_TOKEN_HEADER} header"
    if not expected or not hmac.compare_digest(str(token), str(expected)):
        return "Invalid internal token"
    return None


def require_internal_auth(request: Request) -> None:
    error = validate_internal_auth(request.headers, request.app.state.settings.internal_api_key)
    if error:
        raise UnauthorizedError(error)
