"""
Custom error classes for Contribution Hub.
Structured error handling with error codes and a failure taxonomy.

Every error carries a ``category`` label that decides how a run reacts:
    transient: retried with backoff, then the entity is counted as failed
    data: not retried, the entity yields an empty/UNKNOWN result
    fatal: the whole run moves to the ``error`` state

Hierarchy:
    AttributionError
    ├── APIError
    │   ├── APITimeoutError
    │   ├── APIRateLimitError
    │   ├── APIAuthError
    │   └── APINotFoundError
    ├── DataError
    │   └── ConfigError
    └── RunError
        ├── StageResolutionError
        └── JobAlreadyRunningError
"""

TRANSIENT = "transient"
DATA = "data"
FATAL = "fatal"


class AttributionError(Exception):
    """Base exception for all Contribution Hub errors."""

    category = FATAL

    def __init__(self, message: str, code: str = "UNKNOWN", details: dict = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code}] {message}")

    def to_dict(self) -> dict:
        """User-facing summary: taxonomy label plus message, never a traceback."""
        return {
            "code": self.code,
            "category": self.category,
            "message": self.message,
        }


# --- API Errors ---

class APIError(AttributionError):
    """Base class for HubSpot API errors."""

    category = TRANSIENT

    def __init__(self, message: str, code: str = "API_ERROR",
                 status_code: int = None, url: str = None, **kwargs):
        self.status_code = status_code
        self.url = url
        details = {"status_code": status_code, "url": url, **kwargs}
        super().__init__(message, code=code, details=details)


class APITimeoutError(APIError):
    """Request timed out."""

    def __init__(self, url: str, timeout: float):
        super().__init__(
            f"Request timed out after {timeout}s: {url}",
            code="API_TIMEOUT", url=url, timeout=timeout,
        )


class APIRateLimitError(APIError):
    """Rate limit exceeded (HTTP 429)."""

    def __init__(self, url: str, retry_after: int = None):
        msg = f"Rate limit exceeded: {url}"
        if retry_after:
            msg += f" (retry after {retry_after}s)"
        super().__init__(
            msg, code="API_RATE_LIMIT", status_code=429, url=url,
            retry_after=retry_after,
        )
        self.retry_after = retry_after


class APIAuthError(APIError):
    """Authentication or authorization failure."""

    category = FATAL

    def __init__(self, url: str, status_code: int = 401):
        super().__init__(
            f"Authentication failed: {url}",
            code="API_AUTH_FAILED", url=url, status_code=status_code,
        )


class APINotFoundError(APIError):
    """Requested CRM object or property does not exist."""

    category = DATA

    def __init__(self, url: str):
        super().__init__(
            f"Not found: {url}", code="API_NOT_FOUND", url=url, status_code=404,
        )


# --- Data Errors ---

class DataError(AttributionError):
    """Base class for data processing errors."""

    category = DATA


class ConfigError(DataError):
    """Configuration value or file error."""

    def __init__(self, message: str, config_key: str = None):
        super().__init__(
            message, code="CONFIG_ERROR",
            details={"config_key": config_key},
        )


# --- Run Errors ---

class RunError(AttributionError):
    """Unrecoverable error that aborts a whole run."""

    category = FATAL


class StageResolutionError(RunError):
    """Closed-won pipeline stages could not be resolved."""

    def __init__(self, reason: str):
        super().__init__(
            f"Could not resolve closed-won deal stages: {reason}",
            code="STAGE_RESOLUTION_FAILED",
        )


class JobAlreadyRunningError(RunError):
    """A run for this key is already in flight."""

    def __init__(self, tenant: str, kind: str):
        super().__init__(
            f"A {kind} run is already in progress for portal {tenant}",
            code="JOB_RUNNING", details={"tenant": tenant, "kind": kind},
        )
