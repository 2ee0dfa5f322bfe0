"""
Schemas for TikTok Shop payloads and the integration's own results.
"""
import hashlib
import json
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from shopbridge.core.enums import ConnectionSyncStatus, SyncOutcome, SyncResource
from shopbridge.core.utils import ensure_utc, from_unix
from shopbridge.schemas.base import BaseSchema, PlatformPayload

# Values at or above this are unix timestamps, below it they are durations.
_EPOCH_THRESHOLD = 1_000_000_000

TRANSACTION_ID_FIELDS = ("id", "transaction_id", "statement_transaction_id")
OCCURRED_AT_FIELDS = ("statement_time", "order_create_time", "create_time", "settlement_time")


def _expiry_from(value: int, now: datetime) -> datetime:
    """
    Token expiries arrive either as seconds-from-now or as an absolute unix
    timestamp depending on API version; both are accepted.
    """
    if value >= _EPOCH_THRESHOLD:
        return from_unix(value)
    return ensure_utc(now) + timedelta(seconds=value)


class TikTokTokens(PlatformPayload):
    """data block of /api/v2/token/get and /api/v2/token/refresh"""
    access_token: str
    refresh_token: str
    access_token_expire_in: int
    refresh_token_expire_in: int
    open_id: Optional[str] = None
    seller_name: Optional[str] = None

    def access_expires_at(self, now: datetime) -> datetime:
        return _expiry_from(self.access_token_expire_in, now)

    def refresh_expires_at(self, now: datetime) -> datetime:
        return _expiry_from(self.refresh_token_expire_in, now)


class TikTokShop(PlatformPayload):
    id: str
    cipher: Optional[str] = None
    name: Optional[str] = None
    region: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_string(cls, value):
        return str(value) if value is not None else value


class Page(BaseModel):
    """One page of a cursor-paginated search endpoint"""
    items: List[Dict[str, Any]] = Field(default_factory=list)
    next_cursor: Optional[str] = None
    total: Optional[int] = None


class StatementTransaction(BaseModel):
    transaction_id: str
    transaction_type: str
    amount: Decimal
    currency: Optional[str] = None
    order_id: Optional[str] = None
    occurred_at: Optional[datetime] = None
    raw: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], classifier) -> "StatementTransaction":
        """Map the fields we know and keep the whole payload as raw."""
        transaction_id = None
        for field in TRANSACTION_ID_FIELDS:
            if payload.get(field) not in (None, ""):
                transaction_id = str(payload[field])
                break
        if transaction_id is None:
            # No platform id: derive a stable one so repeated syncs still upsert
            digest = hashlib.sha1(
                json.dumps(payload, sort_keys=True, default=str).encode("utf8")
            ).hexdigest()
            transaction_id = f"derived:{digest}"

        occurred_at = None
        for field in OCCURRED_AT_FIELDS:
            occurred_at = from_unix(payload.get(field))
            if occurred_at:
                break

        currency = payload.get("currency")
        if not currency:
            for field in classifier.amount_fields:
                value = payload.get(field)
                if isinstance(value, dict) and value.get("currency"):
                    currency = value["currency"]
                    break

        order_id = payload.get("order_id")
        return cls(
            transaction_id=transaction_id,
            transaction_type=classifier.classify(payload),
            amount=classifier.amount(payload),
            currency=currency,
            order_id=str(order_id) if order_id not in (None, "") else None,
            occurred_at=occurred_at,
            raw=payload,
        )


class TypeAggregate(BaseModel):
    count: int = 0
    total_amount: Decimal = Decimal("0")


class SyncErrorEntry(BaseModel):
    page: int
    kind: str
    message: str
    code: Optional[int] = None


class SyncResult(BaseModel):
    """Structured outcome of one sync run"""
    connection_id: str
    resource: SyncResource
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    records_fetched: int = 0
    records_upserted: int = 0
    records_removed: int = 0
    pages_fetched: int = 0
    errors: List[SyncErrorEntry] = Field(default_factory=list)
    by_type: Dict[str, TypeAggregate] = Field(default_factory=dict)
    page_cap_reached: bool = False
    cancelled: bool = False
    reauth_required: bool = False
    skipped: bool = False

    @property
    def outcome(self) -> SyncOutcome:
        if self.errors:
            return SyncOutcome.FAILED
        if self.skipped:
            return SyncOutcome.SKIPPED
        if self.cancelled:
            return SyncOutcome.CANCELLED
        if self.page_cap_reached:
            return SyncOutcome.PARTIAL
        return SyncOutcome.COMPLETE


# --- API schemas ---

class SyncRequest(BaseModel):
    connection_id: str = Field(alias="connectionId")
    sync_type: SyncResource = Field(default=SyncResource.ALL, alias="syncType")
    full_sync: bool = Field(default=False, alias="fullSync")

    model_config = {"populate_by_name": True}


class SyncStartResponse(BaseModel):
    status: str


class AuthUrlResponse(BaseModel):
    url: str


class ConnectionRead(BaseSchema):
    """Connection as shown to its owner - no credentials"""
    id: str
    user_id: str
    shop_id: Optional[str] = None
    shop_name: Optional[str] = None
    region: Optional[str] = None
    connected_at: datetime
    last_sync_at: Optional[datetime] = None
    sync_status: ConnectionSyncStatus
    status_message: Optional[str] = None


class CronSyncEntry(BaseModel):
    id: str
    shop: Optional[str] = None
    status: str
    outcome: Optional[SyncOutcome] = None


class CronSyncResponse(BaseModel):
    processed: int
    results: List[CronSyncEntry] = Field(default_factory=list)
