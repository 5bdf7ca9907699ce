"""
FastAPI Backend for Secure Unlocker

Signed remote control plane for unlocking and mounting encrypted volumes.
"""
import argparse
import errno
import logging
import os
import re
import socket
import threading
import time
import uuid
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.middleware.base import BaseHTTPMiddleware

from secure_unlocker import __version__
from secure_unlocker.api.rate_limiting import FailureRateLimiter, RateLimitHeadersMiddleware
from secure_unlocker.api.routes import volumes
from secure_unlocker.api.schemas import ErrorResponse
from secure_unlocker.core.config import Settings, configure_logging, get_settings
from secure_unlocker.core.errors import AuthenticationError, RateLimitError, UnlockerError
from secure_unlocker.core.signing.registry import TrustedKeyStore, load_trusted_keys
from secure_unlocker.core.signing.verify import SignatureVerifier
from secure_unlocker.core.volumes.channel import SecretChannel, build_fifo_channels, build_slot_channels
from secure_unlocker.core.volumes.orchestrator import MountOrchestrator
from secure_unlocker.core.volumes.registry import VolumeRegistry, load_volume_registry
from secure_unlocker.core.volumes.supervisor import SystemdSupervisor, ThreadSupervisor, WorkerSupervisor
from secure_unlocker.core.volumes.tools import VolumeTools

logger = logging.getLogger(__name__)
error_logger = logging.getLogger("secure_unlocker.errors")

RATE_LIMIT_CLEANUP_INTERVAL_SECONDS = 300


# Security Headers Middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        return response


def _sanitize_error_message(message: str) -> str:
    """Scrub password-like fragments from exception messages before logging."""
    sanitized = re.sub(
        r'(password|passphrase|secret|key)["\']?\s*[=:]\s*["\']?[^"\'\s,;}]+',
        r'\1=[REDACTED]',
        message,
        flags=re.IGNORECASE,
    )
    # Raw Ed25519 keys and signatures
    sanitized = re.sub(r'\b[0-9a-fA-F]{64,128}\b', '[REDACTED_HEX]', sanitized)
    return sanitized


async def unlocker_error_handler(request: Request, exc: UnlockerError):
    """Translate the error taxonomy into {"error": message} responses."""
    headers = {}
    if isinstance(exc, RateLimitError):
        headers["Retry-After"] = str(exc.retry_after)
    elif isinstance(exc, AuthenticationError) and exc.not_configured:
        logger.error("No trusted keys configured, rejecting signed request (check TRUSTED_KEYS_FILE)")
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.message).model_dump(exclude_none=True),
        headers=headers,
    )


async def global_exception_handler(request: Request, exc: Exception):
    """
    Log unexpected errors internally with an error ID and return a generic
    message to the client.
    """
    error_id = str(uuid.uuid4())
    sanitized_message = _sanitize_error_message(str(exc))

    error_logger.error(
        f"Error {error_id}: {type(exc).__name__}: {sanitized_message}",
        exc_info=True,
        extra={
            "error_id": error_id,
            "path": request.url.path,
            "method": request.method,
            "client": request.client.host if request.client else None,
        },
    )

    return JSONResponse(
        status_code=500,
        content=ErrorResponse(error="An internal error occurred", error_id=error_id).model_dump(),
    )


def build_supervisor(
    settings: Settings,
    registry: VolumeRegistry,
    tools: Optional[VolumeTools] = None,
) -> Tuple[WorkerSupervisor, Dict[str, SecretChannel]]:
    """Create the configured supervisor backend and its secret channels."""
    if settings.supervisor == "systemd":
        channels = build_fifo_channels(Path(settings.pipes_dir), registry.names())
        supervisor = SystemdSupervisor(
            unit_prefix=settings.unit_prefix,
            sudo_path=settings.sudo_path or None,
            systemctl_path=settings.systemctl_path,
        )
        return supervisor, channels

    if settings.supervisor == "thread":
        channels = build_slot_channels(registry.names())
        supervisor = ThreadSupervisor(
            registry,
            channels,
            tools or VolumeTools(),
            poll_interval=settings.worker_poll_interval_seconds,
            stop_timeout=settings.worker_stop_timeout_seconds,
        )
        return supervisor, channels

    raise ValueError(f"Unknown supervisor backend '{settings.supervisor}' (expected thread or systemd)")


def _start_rate_limit_cleanup(app: FastAPI) -> None:
    limiter: FailureRateLimiter = app.state.rate_limiter
    stop_event = threading.Event()

    def cleanup_loop():
        while not stop_event.wait(RATE_LIMIT_CLEANUP_INTERVAL_SECONDS):
            try:
                limiter.cleanup_old_entries()
            except Exception as e:
                logger.error(f"Rate limit cleanup error: {e}")

    cleanup_thread = threading.Thread(target=cleanup_loop, name="rate-limit-cleanup", daemon=True)
    cleanup_thread.start()
    app.state.cleanup_stop = stop_event
    logger.info("✅ Rate limit cleanup thread started")


def create_app(
    settings: Optional[Settings] = None,
    registry: Optional[VolumeRegistry] = None,
    trusted_keys: Optional[TrustedKeyStore] = None,
    supervisor: Optional[WorkerSupervisor] = None,
    channels: Optional[Dict[str, SecretChannel]] = None,
    tools: Optional[VolumeTools] = None,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    """
    Build the API application.

    Every component can be injected so tests get isolated instances; the
    rest is built from settings.
    """
    settings = settings or get_settings()
    if registry is None:
        registry = load_volume_registry(settings)
    if trusted_keys is None:
        trusted_keys = load_trusted_keys(settings)
    if supervisor is None:
        supervisor, channels = build_supervisor(settings, registry, tools)
    elif channels is None:
        raise ValueError("channels are required when a supervisor is injected")

    if not trusted_keys.is_configured:
        logger.warning("No trusted public keys configured - all API requests will be rejected")

    app = FastAPI(
        title="Secure Unlocker API",
        description="Signed remote unlock and mount of encrypted volumes",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    app.state.settings = settings
    app.state.registry = registry
    app.state.supervisor = supervisor
    app.state.verifier = SignatureVerifier(
        trusted_keys, freshness_window=settings.freshness_window_seconds, clock=clock
    )
    app.state.rate_limiter = FailureRateLimiter.from_settings(settings, clock=clock)
    app.state.orchestrator = MountOrchestrator(
        registry,
        supervisor,
        channels,
        settle_delay=settings.settle_delay_seconds,
        write_timeout=settings.channel_write_timeout_seconds,
    )

    app.add_middleware(RateLimitHeadersMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_exception_handler(UnlockerError, unlocker_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.include_router(volumes.router)

    @app.on_event("startup")
    async def startup_event():
        _start_rate_limit_cleanup(app)
        logger.info(
            f"✅ Secure Unlocker ready: {len(registry)} volumes, "
            f"{len(trusted_keys)} trusted keys, supervisor={settings.supervisor}"
        )

    @app.on_event("shutdown")
    async def shutdown_event():
        stop_event = getattr(app.state, "cleanup_stop", None)
        if stop_event is not None:
            stop_event.set()
        try:
            supervisor.shutdown()
            logger.info("✅ Worker supervisor shut down")
        except Exception as e:
            logger.error(f"❌ Failed to shut down worker supervisor: {e}")

    # Static web client, served without authentication; API routes take precedence
    if settings.public_dir and os.path.isdir(settings.public_dir):
        app.mount("/", StaticFiles(directory=settings.public_dir, html=True), name="public")
        logger.info(f"Serving static files from {settings.public_dir}")

    return app


def wait_for_listen_address(host: str, port: int, timeout: float, interval: float = 1.0) -> None:
    """
    Wait until host:port can be bound.

    At boot the listen address may not be assigned yet. Retries on
    EADDRNOTAVAIL/EADDRINUSE until timeout, then re-raises.
    """
    deadline = time.monotonic() + timeout
    attempt = 0
    while True:
        attempt += 1
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
            if attempt > 1:
                logger.info(f"Listen address {host}:{port} available after {attempt} attempts")
            return
        except OSError as e:
            if e.errno not in (errno.EADDRNOTAVAIL, errno.EADDRINUSE) or time.monotonic() >= deadline:
                raise
            logger.warning(f"{host}:{port} not available yet ({e.strerror}), retrying...")
        finally:
            sock.close()
        time.sleep(interval)


def main(argv=None):
    """Entry point for secure-unlocker-server."""
    parser = argparse.ArgumentParser(description="Secure Unlocker API server")
    parser.add_argument("--host", help="Listen address (default: LISTEN_ADDRESS or 127.0.0.1)")
    parser.add_argument("--port", type=int, help="Listen port (default: PORT or 3456)")
    args = parser.parse_args(argv)

    import uvicorn

    settings = get_settings()
    configure_logging(settings)
    host = args.host or settings.listen_address
    port = args.port or settings.port

    app = create_app(settings)
    wait_for_listen_address(host, port, settings.listen_retry_seconds)
    logger.info(f"Secure Unlocker listening on {host}:{port}")
    uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
