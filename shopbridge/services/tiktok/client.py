import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlencode

import httpx

from shopbridge.core.config import Settings
from shopbridge.core.exceptions import TikTokAPIError, TikTokParseError, TikTokTransportError
from shopbridge.core.logging_config import mask_secret
from shopbridge.core.utils import to_unix
from shopbridge.schemas.tiktok import Page, TikTokShop, TikTokTokens
from shopbridge.services.tiktok.signer import sign

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINTS: Dict[str, str] = {
    "authorize": "/open/authorize",
    "token_get": "/api/v2/token/get",
    "token_refresh": "/api/v2/token/refresh",
    "authorized_shops": "/authorization/202309/shops",
    "statement_transactions": "/finance/202309/statement_transactions/search",
    "settlements": "/finance/202309/settlements/search",
    "orders": "/order/202309/orders/search",
    "affiliate_orders": "/affiliate/202309/orders",
    "products": "/product/202309/products/search",
}


@dataclass(frozen=True)
class TikTokClientConfig:
    """Everything the client needs to sign and send a request."""
    app_key: str
    app_secret: str
    api_base: str = "https://open-api.tiktokglobalshop.com"
    auth_base: str = "https://services.tiktokshop.com"
    timeout: float = 30.0
    endpoints: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_ENDPOINTS))
    retryable_codes: Sequence[int] = ()

    @classmethod
    def from_settings(cls, settings: Settings) -> "TikTokClientConfig":
        if not settings.TIKTOK_APP_KEY or not settings.TIKTOK_APP_SECRET:
            raise ValueError(
                "Missing TikTok Shop credentials. "
                "Please set TIKTOK_APP_KEY and TIKTOK_APP_SECRET."
            )
        endpoints = dict(DEFAULT_ENDPOINTS)
        endpoints.update(settings.TIKTOK_ENDPOINT_OVERRIDES or {})
        return cls(
            app_key=settings.TIKTOK_APP_KEY,
            app_secret=settings.TIKTOK_APP_SECRET,
            api_base=settings.TIKTOK_API_BASE.rstrip("/"),
            auth_base=settings.TIKTOK_AUTH_BASE.rstrip("/"),
            timeout=settings.TIKTOK_REQUEST_TIMEOUT,
            endpoints=endpoints,
            retryable_codes=tuple(settings.retryable_codes),
        )

    def path(self, name: str, **kwargs) -> str:
        try:
            template = self.endpoints[name]
        except KeyError:
            raise ValueError(f"Unknown TikTok endpoint '{name}'")
        return template.format(**kwargs) if kwargs else template


class TikTokClient:
    """
    Async client for the TikTok Shop Open API.

    Every call is signed (see signer.sign) and answered with an envelope
    ``{"code": 0, "message": "Success", "data": {...}}``. A non-zero code is an
    application error whatever the HTTP status. The client never retries;
    retry policy belongs to the sync engine.
    """

    def __init__(self, config: TikTokClientConfig):
        self.config = config
        logger.debug(f"TikTokClient initialized for {config.api_base}")

    def _timestamp(self) -> str:
        return str(int(time.time()))

    def authorization_url(self, state: str) -> str:
        """URL the member is sent to in order to authorize the app"""
        query = urlencode({"app_key": self.config.app_key, "state": state})
        return f"{self.config.auth_base}{self.config.path('authorize')}?{query}"

    async def request(
        self,
        path: str,
        method: str = "GET",
        access_token: Optional[str] = None,
        shop_cipher: Optional[str] = None,
        query_extra: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Make a signed request to a platform endpoint

        Args:
            path: endpoint path, e.g. /authorization/202309/shops
            method: HTTP method
            access_token: sent in the x-tts-access-token header
            shop_cipher: required by shop-scoped endpoints
            query_extra: endpoint specific query parameters
            body: JSON body for search endpoints

        Returns:
            Dict: the envelope's data block

        Raises:
            TikTokTransportError, TikTokAPIError, TikTokParseError
        """
        query_params: Dict[str, str] = {
            "app_key": self.config.app_key,
            "timestamp": self._timestamp(),
        }
        if shop_cipher:
            query_params["shop_cipher"] = shop_cipher
        for key, value in (query_extra or {}).items():
            if value is not None:
                query_params[key] = str(value)

        # The exact string that is signed is the one that is sent
        body_str = json.dumps(body, separators=(",", ":")) if body is not None else None
        query_params["sign"] = sign(path, query_params, body_str, secret=self.config.app_secret)

        headers = {"Content-Type": "application/json"}
        if access_token:
            headers["x-tts-access-token"] = access_token

        return await self._send(method, f"{self.config.api_base}{path}", path, query_params, headers, body_str)

    async def _send(
        self,
        method: str,
        url: str,
        path: str,
        params: Dict[str, str],
        headers: Dict[str, str],
        body_str: Optional[str] = None,
    ) -> Dict[str, Any]:
        logger.debug(f"Making {method} request to {path}")

        try:
            async with httpx.AsyncClient(timeout=self.config.timeout) as client:
                response = await client.request(
                    method=method,
                    url=url,
                    params=params,
                    headers=headers,
                    content=body_str,
                )
        except httpx.RequestError as e:
            logger.error(f"Network error calling {path}: {str(e)}")
            raise TikTokTransportError(f"Network error calling {path}: {str(e)}") from e

        return self._parse_envelope(response, path)

    def _parse_envelope(self, response: httpx.Response, path: str) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError:
            if response.status_code >= 500:
                logger.error(f"TikTok {path} returned HTTP {response.status_code}")
                raise TikTokTransportError(f"HTTP {response.status_code} from {path}")
            logger.error(f"Unparseable response from {path}: {response.text[:500]}")
            raise TikTokParseError(f"Response from {path} is not JSON", raw=response.text)

        if not isinstance(payload, dict) or "code" not in payload:
            logger.error(f"Unexpected envelope from {path}: {str(payload)[:500]}")
            raise TikTokParseError(f"Unexpected envelope from {path}", raw=json.dumps(payload, default=str))

        try:
            code = int(payload["code"])
        except (TypeError, ValueError):
            raise TikTokParseError(f"Non-numeric envelope code from {path}", raw=json.dumps(payload, default=str))

        if code != 0:
            message = str(payload.get("message") or "")
            logger.warning(f"TikTok API error [{path}]: {code} {message}")
            raise TikTokAPIError(code, message, path=path, retryable_codes=self.config.retryable_codes)

        data = payload.get("data")
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise TikTokParseError(f"Envelope data from {path} is not an object", raw=json.dumps(payload, default=str))
        return data

    # Token endpoints

    async def _token_call(self, endpoint: str, params: Dict[str, str]) -> TikTokTokens:
        path = self.config.path(endpoint)
        query_params = {
            "app_key": self.config.app_key,
            "app_secret": self.config.app_secret,
            "timestamp": self._timestamp(),
            **params,
        }
        query_params["sign"] = sign(path, query_params, secret=self.config.app_secret)
        data = await self._send(
            "GET",
            f"{self.config.api_base}{path}",
            path,
            query_params,
            {"Content-Type": "application/json"},
        )
        try:
            return TikTokTokens.model_validate(data)
        except ValueError as e:
            raise TikTokParseError(f"Unexpected token payload from {path}: {e}", raw=json.dumps(data, default=str))

    async def get_access_token(self, auth_code: str) -> TikTokTokens:
        """Exchange an authorization code for tokens"""
        tokens = await self._token_call(
            "token_get",
            {"auth_code": auth_code, "grant_type": "authorized_code"},
        )
        logger.info(f"Exchanged auth code for access token {mask_secret(tokens.access_token)}")
        return tokens

    async def refresh_access_token(self, refresh_token: str) -> TikTokTokens:
        """Trade a refresh token for a new token pair"""
        return await self._token_call(
            "token_refresh",
            {"refresh_token": refresh_token, "grant_type": "refresh_token"},
        )

    # Shop-level endpoints

    async def get_authorized_shops(self, access_token: str) -> List[TikTokShop]:
        data = await self.request(self.config.path("authorized_shops"), "GET", access_token)
        shops = data.get("shops") or []
        if not isinstance(shops, list):
            raise TikTokParseError("authorized shops is not a list", raw=json.dumps(data, default=str))
        return [TikTokShop.model_validate(shop) for shop in shops if isinstance(shop, dict)]

    async def _search(
        self,
        endpoint: str,
        list_keys: Sequence[str],
        access_token: str,
        shop_cipher: str,
        body: Dict[str, Any],
        page_size: int,
        cursor: Optional[str],
    ) -> Page:
        path = self.config.path(endpoint)
        data = await self.request(
            path,
            "POST",
            access_token,
            shop_cipher,
            {"page_size": page_size, "page_token": cursor or None},
            body,
        )
        return self._page(data, list_keys, path)

    @staticmethod
    def _page(data: Dict[str, Any], list_keys: Sequence[str], path: str) -> Page:
        items: Any = []
        for key in list_keys:
            if key in data:
                items = data[key] or []
                break
        if not isinstance(items, list):
            raise TikTokParseError(f"{list_keys[0]} from {path} is not a list", raw=json.dumps(data, default=str))

        next_cursor = data.get("next_page_token") or data.get("next_cursor") or None
        total = data.get("total_count")
        return Page(
            items=[item for item in items if isinstance(item, dict)],
            next_cursor=str(next_cursor) if next_cursor else None,
            total=int(total) if isinstance(total, (int, str)) and str(total).isdigit() else None,
        )

    async def fetch_statement_transactions(
        self,
        access_token: str,
        shop_cipher: str,
        start: datetime,
        end: datetime,
        page_size: int = 100,
        cursor: Optional[str] = None,
    ) -> Page:
        body = {
            "statement_time_ge": to_unix(start),
            "statement_time_lt": to_unix(end),
            "sort_field": "statement_time",
            "sort_order": "DESC",
        }
        return await self._search(
            "statement_transactions",
            ("statement_transactions", "transactions"),
            access_token, shop_cipher, body, page_size, cursor,
        )

    async def fetch_settlements(
        self,
        access_token: str,
        shop_cipher: str,
        start: datetime,
        end: datetime,
        page_size: int = 50,
        cursor: Optional[str] = None,
    ) -> Page:
        body = {
            "request_time_ge": to_unix(start),
            "request_time_lt": to_unix(end),
        }
        return await self._search(
            "settlements", ("settlements",),
            access_token, shop_cipher, body, page_size, cursor,
        )

    async def fetch_orders(
        self,
        access_token: str,
        shop_cipher: str,
        start: datetime,
        end: datetime,
        page_size: int = 50,
        cursor: Optional[str] = None,
    ) -> Page:
        body = {
            "create_time_ge": to_unix(start),
            "create_time_lt": to_unix(end),
        }
        return await self._search(
            "orders", ("orders",),
            access_token, shop_cipher, body, page_size, cursor,
        )

    async def fetch_affiliate_orders(
        self,
        access_token: str,
        shop_cipher: str,
        start: datetime,
        end: datetime,
        page_size: int = 50,
        cursor: Optional[str] = None,
    ) -> Page:
        """Needs the affiliate scope; shops without it answer with an API error"""
        path = self.config.path("affiliate_orders")
        data = await self.request(
            path,
            "GET",
            access_token,
            shop_cipher,
            {
                "start_date": start.strftime("%Y-%m-%d"),
                "end_date": end.strftime("%Y-%m-%d"),
                "page_size": page_size,
                "cursor": cursor or None,
            },
        )
        return self._page(data, ("orders",), path)

    async def fetch_products(
        self,
        access_token: str,
        shop_cipher: str,
        page_size: int = 50,
        cursor: Optional[str] = None,
    ) -> Page:
        return await self._search(
            "products", ("products",),
            access_token, shop_cipher, {}, page_size, cursor,
        )
