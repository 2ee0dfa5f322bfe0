"""
Request guards for the integration endpoints.

Members are authenticated by the upstream identity provider, which forwards the
verified user id in a header. The scheduled trigger is guarded by a shared
secret.
"""

import secrets
from typing import Optional
from fastapi import Depends, Header, HTTPException, Query, status

from shopbridge.core.config import Settings, get_settings


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """User id asserted by the identity provider in front of the service"""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )
    return x_user_id


def verify_cron_secret(
    secret: Optional[str] = Query(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    """
    Constant-time check of the ?secret= parameter against CRON_SECRET.
    An unset CRON_SECRET rejects every call.
    """
    expected = settings.CRON_SECRET
    if not expected or not secret or not secrets.compare_digest(
        secret.encode("utf8"), expected.encode("utf8")
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )
