"""
Error taxonomy shared by the control API, the orchestrator and the worker.

Every failure that reaches the HTTP boundary is one of four classes:

- ValidationError: malformed input or an idempotency conflict (400)
- AuthenticationError: request could not be authenticated (401, 503 if unconfigured)
- RateLimitError: client exceeded its failure budget (429)
- OperationalFault: a privileged operation failed (500)

Lower layers raise CommandError (external tool failed) and ChannelError
(secret could not be delivered); the orchestrator turns those into
OperationalFault.
"""
from typing import Optional, Sequence


class UnlockerError(Exception):
    """Base class for all secure-unlocker errors."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(UnlockerError):
    """Malformed request or idempotency conflict. Never counted as abuse."""

    status_code = 400


class AuthenticationError(UnlockerError):
    """
    Request failed authentication.

    Attributes:
        counts_as_failure: Whether this attempt is charged to the auth rate limit
        not_configured: True when no trusted keys are configured (fail closed)
    """

    status_code = 401

    def __init__(self, message: str = "Authentication failed", counts_as_failure: bool = True,
                 not_configured: bool = False):
        super().__init__(message)
        self.counts_as_failure = counts_as_failure
        self.not_configured = not_configured
        if not_configured:
            self.status_code = 503


class RateLimitError(UnlockerError):
    """Client exhausted its failure budget for a rate-limit class."""

    status_code = 429

    def __init__(self, message: str, retry_after: int):
        super().__init__(message)
        self.retry_after = retry_after


class OperationalFault(UnlockerError):
    """Worker start, secret delivery or a privileged command failed."""

    status_code = 500


class CommandError(Exception):
    """An external command exited unsuccessfully."""

    def __init__(self, args: Sequence[str], returncode: Optional[int], stderr: str = ""):
        self.command = list(args)
        self.returncode = returncode
        self.stderr = stderr.strip()
        detail = f": {self.stderr}" if self.stderr else ""
        super().__init__(f"{self.command[0]} exited with {returncode}{detail}")


class ChannelError(Exception):
    """A secret could not be written to or read from a secret channel."""
