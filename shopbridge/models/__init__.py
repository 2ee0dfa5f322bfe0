from .tiktok import (
    TikTokConnection,
    TikTokStatementTransaction,
    TikTokSettlement,
    TikTokOrder,
    TikTokAffiliateOrder,
    TikTokProduct,
    TikTokSyncRun,
)
