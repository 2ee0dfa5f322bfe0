"""
Shared enums and constants used across the application.
"""

from enum import Enum

class ConnectionSyncStatus(str, Enum):
    """Sync status stored on a TikTok connection."""
    IDLE = "idle"
    PENDING = "pending"      # Queued by the scheduled sweep
    SYNCING = "syncing"      # A sync run currently owns the connection
    ERROR = "error"


class SyncErrorKind(str, Enum):
    """What the member is told when a connection is in error."""
    REAUTH_REQUIRED = "reauth_required"
    SYNC_FAILED = "sync_failed"


class TokenState(str, Enum):
    VALID = "VALID"
    EXPIRING = "EXPIRING"
    REFRESH_FAILED = "REFRESH_FAILED"


class AuthFlowState(str, Enum):
    INIT = "INIT"
    PENDING = "PENDING"
    CALLBACK = "CALLBACK"
    EXCHANGED = "EXCHANGED"
    LINKED = "LINKED"
    LINKED_PENDING_SHOPS = "LINKED_PENDING_SHOPS"
    FAILED = "FAILED"


class SyncResource(str, Enum):
    STATEMENT_TRANSACTIONS = "statement_transactions"
    SETTLEMENTS = "settlements"
    ORDERS = "orders"
    AFFILIATE_ORDERS = "affiliate_orders"
    PRODUCTS = "products"
    ALL = "all"


class SyncOutcome(str, Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"       # Page cap reached
    CANCELLED = "cancelled"
    SKIPPED = "skipped"       # Optional resource the shop has not granted
    FAILED = "failed"
