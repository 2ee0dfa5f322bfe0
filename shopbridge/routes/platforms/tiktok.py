# shopbridge/routes/platforms/tiktok.py
"""
API routes for the TikTok Shop integration.

- Starting the OAuth flow and handling its callback
- Listing the member's connections
- Triggering a sync for one connection
- The secret-guarded scheduled sync trigger
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse
from typing import List, Optional

from shopbridge.core.enums import SyncResource
from shopbridge.core.exceptions import ConnectionNotFoundError
from shopbridge.core.security import get_current_user_id, verify_cron_secret
from shopbridge.dependencies import get_auth_flow, get_credential_store, get_sync_service
from shopbridge.schemas.tiktok import (
    AuthUrlResponse,
    ConnectionRead,
    CronSyncResponse,
    SyncRequest,
    SyncStartResponse,
)
from shopbridge.services.tiktok.auth import TikTokAuthFlow
from shopbridge.services.tiktok.credential_store import CredentialStore
from shopbridge.services.tiktok.service import TikTokSyncService, user_facing_status

router = APIRouter(prefix="/api/tiktok", tags=["tiktok"])

logger = logging.getLogger(__name__)


@router.get("/auth", response_model=AuthUrlResponse)
async def tiktok_auth_url(
    user_id: str = Depends(get_current_user_id),
    auth_flow: TikTokAuthFlow = Depends(get_auth_flow),
):
    """Authorization URL the member is sent to"""
    url, _state = auth_flow.build_authorization_url(user_id)
    return AuthUrlResponse(url=url)


@router.get("/callback")
async def tiktok_callback(
    code: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
    auth_flow: TikTokAuthFlow = Depends(get_auth_flow),
):
    """OAuth redirect target; always answers with a redirect back to the app"""
    result = await auth_flow.complete_callback(code, state)
    logger.info(f"TikTok callback finished in state {result.state.value}")
    return RedirectResponse(url=result.redirect_url, status_code=302)


@router.get("/connections", response_model=List[ConnectionRead])
async def list_tiktok_connections(
    user_id: str = Depends(get_current_user_id),
    store: CredentialStore = Depends(get_credential_store),
):
    connections = await store.list_for_user(user_id)
    return [
        ConnectionRead.from_orm_model(connection).model_copy(
            update={"status_message": user_facing_status(connection)}
        )
        for connection in connections
    ]


@router.post("/sync", response_model=SyncStartResponse)
async def sync_tiktok_connection(
    request: SyncRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    store: CredentialStore = Depends(get_credential_store),
    service: TikTokSyncService = Depends(get_sync_service),
):
    """Start a sync in the background; a running sync is not started twice"""
    try:
        connection = await store.get(request.connection_id)
    except ConnectionNotFoundError:
        raise HTTPException(status_code=404, detail="Connection not found")
    if connection.user_id != user_id:
        raise HTTPException(status_code=404, detail="Connection not found")

    if not await store.try_claim_for_sync(connection.id):
        return SyncStartResponse(status="already_syncing")

    logger.info(f"Queued TikTok {request.sync_type.value} sync for connection {connection.id}")
    background_tasks.add_task(
        run_tiktok_sync_background,
        service,
        connection.id,
        request.sync_type,
        request.full_sync,
    )
    return SyncStartResponse(status="syncing")


async def run_tiktok_sync_background(
    service: TikTokSyncService,
    connection_id: str,
    resource: SyncResource,
    full_sync: bool,
):
    try:
        results = await service.run_connection_sync(connection_id, resource, full_sync, claimed=True)
        for result in results:
            logger.info(
                f"TikTok {result.resource.value} sync for {connection_id}: {result.outcome.value} "
                f"({result.records_upserted} records)"
            )
    except Exception as e:
        # Status is already recorded on the connection
        logger.error(f"Background TikTok sync failed for {connection_id}: {e}")


@router.get("/cron-sync", response_model=CronSyncResponse, dependencies=[Depends(verify_cron_secret)])
async def tiktok_cron_sync(service: TikTokSyncService = Depends(get_sync_service)):
    """Scheduled trigger for the daily sweep"""
    return await service.queue_scheduled_sync(run_inline=True)
