"""
Signed Request Authentication

FastAPI dependencies that gate every control endpoint:

1. Rate-limit admission (mount class first on mount routes, then auth)
2. Ed25519 signature verification (see core/signing/verify.py)
3. Counted failures are charged to the auth class, and also to the mount
   class on mount/unmount routes

Clients only ever learn "Authentication failed"; the reason is logged.
"""

import logging
from dataclasses import dataclass

from fastapi import Request

from secure_unlocker.api.rate_limiting import FailureRateLimiter, LimitClass, client_key
from secure_unlocker.core.errors import AuthenticationError, RateLimitError
from secure_unlocker.core.signing.verify import SignatureVerifier, VerificationError

logger = logging.getLogger(__name__)

RATE_LIMIT_MESSAGES = {
    LimitClass.AUTH: "Too many failed authentication attempts, please try again later",
    LimitClass.MOUNT: "Too many failed mount attempts, please try again later",
}


@dataclass
class AuthContext:
    """
    Authentication context for a verified request.

    Attributes:
        public_key: Hex public key that signed the request
        client: Rate-limit key of the caller (peer address)
        timestamp: Signed request timestamp
    """
    public_key: str
    client: str
    timestamp: int


def _admit(limiter: FailureRateLimiter, client: str, limit_class: LimitClass) -> None:
    decision = limiter.admit(client, limit_class)
    if not decision.allowed:
        raise RateLimitError(RATE_LIMIT_MESSAGES[limit_class], retry_after=decision.retry_after)


async def authenticate(request: Request, limit_class: LimitClass = LimitClass.AUTH) -> AuthContext:
    """
    Authenticate a request on behalf of a route in limit_class.

    Raises:
        RateLimitError: Client exhausted its failure budget
        AuthenticationError: Request not authenticated (401, 503 if unconfigured)
    """
    limiter: FailureRateLimiter = request.app.state.rate_limiter
    verifier: SignatureVerifier = request.app.state.verifier
    client = client_key(request)

    if limit_class is not LimitClass.AUTH:
        _admit(limiter, client, limit_class)
    _admit(limiter, client, LimitClass.AUTH)

    body = await request.body()
    path = request.url.path
    if request.url.query:
        path = f"{path}?{request.url.query}"

    result = verifier.verify(request.method, path, request.headers, body)
    if result.success:
        logger.debug(f"Authenticated {client} with key {result.public_key[:16]}...")
        return AuthContext(public_key=result.public_key, client=client, timestamp=result.timestamp)

    logger.warning(
        f"SECURITY: authentication failed for {client} "
        f"{request.method} {request.url.path}: {result.error_message}"
    )

    if result.error is VerificationError.NOT_CONFIGURED:
        error = AuthenticationError(
            "Authentication not configured",
            counts_as_failure=result.counts_as_failure,
            not_configured=True,
        )
    elif result.error is VerificationError.MISSING_HEADERS:
        error = AuthenticationError(
            "Missing authentication headers", counts_as_failure=result.counts_as_failure
        )
    else:
        error = AuthenticationError(counts_as_failure=result.counts_as_failure)

    if error.counts_as_failure:
        limiter.record_failure(client, LimitClass.AUTH)
        if limit_class is not LimitClass.AUTH:
            limiter.record_failure(client, limit_class)
    raise error


async def require_signed_request(request: Request) -> AuthContext:
    """Dependency for read-only endpoints (auth class)."""
    return await authenticate(request, LimitClass.AUTH)


async def require_signed_mount_request(request: Request) -> AuthContext:
    """Dependency for mount/unmount endpoints (mount class)."""
    return await authenticate(request, LimitClass.MOUNT)
