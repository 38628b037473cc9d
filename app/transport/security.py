# app/transport/security.py
"""
Security utilities for the dispatch API.

Security features:
- Constant-time token comparison (timing attack prevention)
- Token strength warnings at startup
- Bearer admin token for the landlord/admin API
- Shared cron secret for periodic endpoints (header or ?secret=)
- OWASP response headers
"""
import hmac

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config import settings
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

# Minimum token length for security (32 bytes = 256 bits)
MIN_TOKEN_LENGTH = 32
WEAK_TOKEN_PATTERNS = [
    "password", "secret", "token", "admin", "test", "demo",
    "123456", "000000", "111111", "aaaaaa",
]

# Shows the "Authorize" button in the OpenAPI docs
bearer_scheme = HTTPBearer(
    scheme_name="Admin Token",
    description="Enter your admin token (without 'Bearer ' prefix)",
    auto_error=False,
)


def validate_token_strength(token: str, token_name: str = "token") -> list[str]:
    """
    Validate that a token meets minimum security requirements.
    Returns list of warnings (empty if token is strong).
    """
    warnings = []

    if len(token) < MIN_TOKEN_LENGTH:
        warnings.append(
            f"{token_name} is too short ({len(token)} chars). "
            f"Minimum recommended: {MIN_TOKEN_LENGTH} chars"
        )

    token_lower = token.lower()
    for pattern in WEAK_TOKEN_PATTERNS:
        if pattern in token_lower:
            warnings.append(
                f"{token_name} contains weak pattern '{pattern}'. "
                "Use a cryptographically random token (scripts/generate_token.py)"
            )
            break

    return warnings


def check_configured_tokens():
    """Log warnings for weak tokens. Called from app startup."""
    for name, value in (
        ("ADMIN_TOKEN", settings.admin_token),
        ("CRON_SECRET", settings.cron_secret),
        ("UPLOAD_TOKEN_SECRET", settings.upload_token_secret),
    ):
        if value:
            for warning in validate_token_strength(value, name):
                logger.warning(f"SECURITY: {warning}")


# =============================================================================
# Admin API
# =============================================================================

async def require_admin_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
):
    """
    Dependency for landlord/admin endpoints: ``Authorization: Bearer <ADMIN_TOKEN>``.

    Usage:
        @app.post("/api/jobs", dependencies=[Depends(require_admin_auth)])
    """
    if not settings.admin_token:
        logger.critical("ADMIN_TOKEN not configured but admin endpoint accessed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service unavailable"
        )

    if not credentials:
        logger.warning("Admin endpoint accessed without authorization header",
                       extra={"path": request.url.path})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not hmac.compare_digest(credentials.credentials, settings.admin_token):
        logger.warning("Invalid admin token attempt", extra={"path": request.url.path})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


# =============================================================================
# Cron endpoints
# =============================================================================

def _extract_cron_secret(request: Request) -> str:
    auth = request.headers.get("Authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return request.query_params.get("secret", "")


async def require_cron_secret(request: Request):
    """
    Dependency for periodic endpoints called by an external scheduler.

    The secret is accepted as ``Authorization: Bearer <CRON_SECRET>`` or as
    ``?secret=<CRON_SECRET>`` for schedulers that cannot set headers.
    """
    if not settings.cron_secret:
        logger.error("CRON_SECRET not configured but cron endpoint accessed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Cron not configured"
        )

    provided = _extract_cron_secret(request)
    if not provided or not hmac.compare_digest(provided, settings.cron_secret):
        logger.warning("Invalid cron secret", extra={"path": request.url.path})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized"
        )


# =============================================================================
# Response headers
# =============================================================================

class SecurityHeaders:
    """OWASP recommended security headers for a JSON API."""

    @staticmethod
    def add_security_headers(response):
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"

        if "Cache-Control" not in response.headers:
            response.headers["Cache-Control"] = "no-store"

        if settings.is_production or settings.is_staging:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        if "Server" in response.headers:
            del response.headers["Server"]

        return response
