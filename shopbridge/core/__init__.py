"""
Core module exports.
"""
from .enums import (
    ConnectionSyncStatus,
    SyncErrorKind,
    TokenState,
    AuthFlowState,
    SyncResource,
    SyncOutcome
)

from .exceptions import (
    BaseServiceError,
    PlatformServiceError,
    TikTokServiceError,
    TikTokTransportError,
    TikTokAPIError,
    TikTokParseError,
    TikTokAuthExpiredError,
    ConnectionNotFoundError,
    ShopCipherMissingError,
    InvalidAuthStateError,
    SyncError,
    SyncInProgressError
)
