# dispatch_engine/transport/security.py
"""
Request authentication for the dispatch API.

Callers (operator console, professional app backend, intake) send the
admin token as a Bearer token:

    curl -H "Authorization: Bearer $ADMIN_TOKEN" http://host/jobs/<id>

Tokens are compared in constant time.  Without ADMIN_TOKEN the API is
open in dev/staging and unavailable in prod.
"""
import hmac

from asyncpg.exceptions import PostgresError
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from dispatch_engine.config import settings
from dispatch_engine.infra.logging_config import get_logger

logger = get_logger(__name__)

# 32 characters ~ 256 bits for a random token
MIN_TOKEN_LENGTH = 32
MIN_DISTINCT_CHARS = 8

bearer_scheme = HTTPBearer(
    scheme_name="Admin Token",
    description="Admin token, sent as 'Authorization: Bearer <token>'",
    auto_error=False,
)

# First match wins; TimeoutError must precede its OSError relatives
_PUBLIC_MESSAGES = (
    (TimeoutError, "Request timeout"),
    ((PostgresError, ConnectionError), "Service temporarily unavailable"),
    (ValueError, "Invalid input"),
    (KeyError, "Invalid request"),
)


def validate_token_strength(token: str | None, token_name: str = "token") -> list[str]:
    """Return warnings for a weak token (empty if the token looks fine)."""
    if not token:
        return [f"{token_name} is not set"]
    warnings = []
    if len(token) < MIN_TOKEN_LENGTH:
        warnings.append(f"{token_name} is shorter than {MIN_TOKEN_LENGTH} characters")
    if len(set(token)) < MIN_DISTINCT_CHARS:
        warnings.append(f"{token_name} has very low character variety")
    return warnings


def check_configured_tokens() -> None:
    """Log weak token warnings at startup."""
    for name, token in (("ADMIN_TOKEN", settings.admin_token), ("SERVICE_TOKEN", settings.service_token)):
        if token:
            for msg in validate_token_strength(token, name):
                logger.warning(f"[security] {msg}")


async def require_admin_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
):
    """
    Dependency for every non-public endpoint.

        @app.post("/jobs/{job_id}/override", dependencies=[Depends(require_admin_auth)])
    """
    expected = settings.admin_token
    if not expected:
        if settings.is_production:
            logger.critical("ADMIN_TOKEN not configured but protected endpoint accessed")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Service unavailable",
            )
        return

    if credentials is None:
        reason = "missing Authorization header"
    elif hmac.compare_digest(credentials.credentials.encode(), expected.encode()):
        return
    else:
        reason = "token mismatch"

    logger.warning(f"Rejected {request.method} {request.url.path}: {reason}")
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Authentication required",
        headers={"WWW-Authenticate": "Bearer"},
    )


def sanitize_error_message(error: Exception, is_production: bool) -> str:
    """Full detail in dev; a fixed message per error family in prod."""
    if not is_production:
        return str(error)
    for error_types, message in _PUBLIC_MESSAGES:
        if isinstance(error, error_types):
            return message
    return "An error occurred"
