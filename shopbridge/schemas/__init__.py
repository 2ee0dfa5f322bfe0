"""
Pydantic schemas for platform payloads and API responses.
"""
from .base import BaseSchema, PlatformPayload
from .tiktok import (
    TikTokTokens,
    TikTokShop,
    Page,
    StatementTransaction,
    TypeAggregate,
    SyncErrorEntry,
    SyncResult,
    SyncRequest,
    ConnectionRead,
    CronSyncEntry,
    CronSyncResponse,
)
