from typing import Iterable, Optional


class BaseServiceError(Exception):
    """Base exception for all service-related errors."""
    pass

class PlatformServiceError(BaseServiceError):
    """Base exception for platform service errors."""
    pass

class TikTokServiceError(PlatformServiceError):
    """Base exception for TikTok Shop specific errors."""
    pass

class TikTokTransportError(TikTokServiceError):
    """Raised when the platform could not be reached (network, DNS, timeout)."""

    retryable = True

class TikTokAPIError(TikTokServiceError):
    """Raised when the platform envelope carries a non-zero code."""

    def __init__(self, code: int, message: str, path: Optional[str] = None,
                 retryable_codes: Iterable[int] = ()):
        self.code = code
        self.message = message
        self.path = path
        self.retryable = code in set(retryable_codes)
        where = f" [{path}]" if path else ""
        super().__init__(f"TikTok API error{where}: {code} {message}")

class TikTokParseError(TikTokServiceError):
    """Raised when a response body is not the expected JSON envelope."""

    retryable = False

    def __init__(self, message: str, raw: str = ""):
        # Keep enough of the body for diagnosis without flooding the logs
        self.raw = raw[:2000] if raw else ""
        super().__init__(message)

class TikTokAuthExpiredError(TikTokServiceError):
    """Raised when the refresh token is dead and the user must re-authorize."""

    retryable = False

    def __init__(self, connection_id: str, detail: str = ""):
        self.connection_id = connection_id
        self.detail = detail
        super().__init__(f"Reauthorization required for connection {connection_id}")

class ConnectionNotFoundError(TikTokServiceError):
    """Raised when a connection record does not exist."""
    pass

class ShopCipherMissingError(TikTokServiceError):
    """Raised when a shop-scoped call is attempted without a shop cipher."""
    pass

class InvalidAuthStateError(TikTokServiceError):
    """Raised when an OAuth callback state cannot be trusted."""
    pass

class SyncError(PlatformServiceError):
    """Raised when platform synchronization fails."""
    pass

class SyncInProgressError(SyncError):
    """Raised when a sync is already running for a connection."""
    pass
