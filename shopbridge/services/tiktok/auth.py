"""
TikTok Shop OAuth flow.

INIT builds the authorize URL with an opaque state carrying the member's id
and a nonce: random bytes plus an HMAC over the id and those bytes, keyed
with the app secret, so a state naming another member cannot be forged.
The platform redirects back with ``code`` and the same ``state``; the
state is checked before anything is exchanged, then the code is
traded for tokens and one connection is stored per authorized shop. When the
shop list is not available yet the tokens are stored on a shopless connection
and shop discovery happens on the first sync.

Failures always end in a redirect carrying a generic error marker; platform
error text goes to the logs only.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlencode

from shopbridge.core.config import Settings
from shopbridge.core.enums import AuthFlowState
from shopbridge.core.exceptions import InvalidAuthStateError, TikTokServiceError
from shopbridge.core.utils import utcnow
from shopbridge.services.tiktok.client import TikTokClient
from shopbridge.services.tiktok.credential_store import CredentialStore

logger = logging.getLogger(__name__)

AUTH_FAILED_MARKER = "tiktok_auth_failed"


def _nonce_signature(user_id: str, random_part: str, secret: str) -> str:
    if not secret:
        raise ValueError("A state signing secret is required")
    return hmac.new(
        secret.encode("utf8"),
        f"{user_id}.{random_part}".encode("utf8"),
        hashlib.sha256,
    ).hexdigest()


def encode_state(user_id: str, secret: str, random_part: Optional[str] = None) -> str:
    """base64url JSON {userId, nonce}, unpadded; nonce is <random>.<signature>"""
    random_part = random_part or secrets.token_hex(16)
    nonce = f"{random_part}.{_nonce_signature(user_id, random_part, secret)}"
    payload = json.dumps({"userId": user_id, "nonce": nonce})
    return base64.urlsafe_b64encode(payload.encode("utf8")).decode("ascii").rstrip("=")


def decode_state(state: Optional[str], secret: str) -> Dict[str, str]:
    """
    Decode and verify a state produced by encode_state

    Raises:
        InvalidAuthStateError: missing, malformed or not signed by us
    """
    if not state:
        raise InvalidAuthStateError("Missing state")
    padded = state + "=" * (-len(state) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf8"))
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise InvalidAuthStateError(f"Malformed state: {e}") from e
    if not isinstance(payload, dict):
        raise InvalidAuthStateError("State is not an object")
    user_id = payload.get("userId")
    if not isinstance(user_id, str) or not user_id:
        raise InvalidAuthStateError("State has no userId")

    nonce = payload.get("nonce")
    if not isinstance(nonce, str) or nonce.count(".") != 1:
        raise InvalidAuthStateError("State nonce is missing or malformed")
    random_part, signature = nonce.split(".")
    expected = _nonce_signature(user_id, random_part, secret)
    if not random_part or not hmac.compare_digest(signature.encode("utf8"), expected.encode("utf8")):
        raise InvalidAuthStateError("State signature does not match")
    return payload


@dataclass
class AuthFlowResult:
    state: AuthFlowState
    redirect_url: str
    user_id: Optional[str] = None
    connection_ids: List[str] = field(default_factory=list)


class TikTokAuthFlow:

    def __init__(self, client: TikTokClient, store: CredentialStore, settings: Settings):
        self.client = client
        self.store = store
        self.state_secret = settings.TIKTOK_APP_SECRET
        self.integrations_url = f"{settings.APP_URL.rstrip('/')}{settings.TIKTOK_INTEGRATIONS_PATH}"

    def _redirect(self, **params) -> str:
        return f"{self.integrations_url}?{urlencode(params)}"

    def _failed(self, user_id: Optional[str] = None) -> AuthFlowResult:
        return AuthFlowResult(
            state=AuthFlowState.FAILED,
            redirect_url=self._redirect(error=AUTH_FAILED_MARKER),
            user_id=user_id,
        )

    def build_authorization_url(self, user_id: str) -> Tuple[str, str]:
        """Returns (authorize_url, state)"""
        state = encode_state(user_id, self.state_secret)
        logger.info(f"Generated TikTok authorization URL for user {user_id}")
        return self.client.authorization_url(state), state

    async def complete_callback(self, code: Optional[str], state: Optional[str]) -> AuthFlowResult:
        if not code or not state:
            logger.warning("TikTok callback without code or state")
            return self._failed()

        try:
            user_id = decode_state(state, self.state_secret)["userId"]
        except InvalidAuthStateError as e:
            logger.warning(f"Rejected TikTok callback: {e}")
            return self._failed()

        try:
            tokens = await self.client.get_access_token(code)
        except TikTokServiceError as e:
            logger.error(f"TikTok code exchange failed for user {user_id}: {e}")
            return self._failed(user_id)

        try:
            try:
                shops = await self.client.get_authorized_shops(tokens.access_token)
            except TikTokServiceError as e:
                # Shop scope can be granted after the token; discover on first sync
                logger.warning(f"TikTok shop listing unavailable for user {user_id}: {e}")
                shops = []

            now = utcnow()
            if shops:
                connection_ids = []
                for shop in shops:
                    connection = await self.store.upsert_shop_connection(user_id, shop, tokens, now=now)
                    connection_ids.append(connection.id)
                logger.info(f"Linked {len(connection_ids)} TikTok shop(s) for user {user_id}")
                return AuthFlowResult(
                    state=AuthFlowState.LINKED,
                    redirect_url=self._redirect(tiktok="connected"),
                    user_id=user_id,
                    connection_ids=connection_ids,
                )

            connection = await self.store.create_pending_connection(user_id, tokens, now=now)
            return AuthFlowResult(
                state=AuthFlowState.LINKED_PENDING_SHOPS,
                redirect_url=self._redirect(tiktok="connected"),
                user_id=user_id,
                connection_ids=[connection.id],
            )
        except Exception:
            logger.exception(f"Storing TikTok connection failed for user {user_id}")
            return self._failed(user_id)
