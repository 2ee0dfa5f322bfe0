# OAuth flow unit tests
import base64
import json
from urllib.parse import parse_qs, urlparse

import pytest

from shopbridge.core.config import get_settings
from shopbridge.core.enums import AuthFlowState
from shopbridge.core.exceptions import InvalidAuthStateError, TikTokAPIError, TikTokTransportError
from shopbridge.schemas.tiktok import TikTokShop
from shopbridge.services.tiktok.auth import TikTokAuthFlow, decode_state, encode_state
from shopbridge.services.tiktok.client import TikTokClient

SECRET = "test_app_secret"


@pytest.fixture
def mock_client(mocker, client_config):
    client = mocker.MagicMock()
    client.authorization_url = TikTokClient(client_config).authorization_url
    client.get_access_token = mocker.AsyncMock()
    client.get_authorized_shops = mocker.AsyncMock()
    return client


@pytest.fixture
def auth_flow(mock_client, credential_store):
    return TikTokAuthFlow(mock_client, credential_store, get_settings())


def _query(url):
    return {key: values[0] for key, values in parse_qs(urlparse(url).query).items()}


"""
1. State Encoding Tests
"""

def test_state_round_trip_carries_user_and_signed_nonce():
    state = encode_state("user-42", SECRET)
    payload = decode_state(state, SECRET)
    random_part, signature = payload["nonce"].split(".")
    assert payload["userId"] == "user-42"
    assert len(random_part) == 32
    assert len(signature) == 64
    assert "=" not in state


def test_states_are_unique_per_call():
    assert encode_state("user-42", SECRET) != encode_state("user-42", SECRET)


@pytest.mark.parametrize("state", [
    None,
    "",
    "%%%not-base64%%%",
    base64.urlsafe_b64encode(b"not json").decode(),
    base64.urlsafe_b64encode(json.dumps(["userId"]).encode()).decode(),
    base64.urlsafe_b64encode(json.dumps({"nonce": "abc"}).encode()).decode(),
    base64.urlsafe_b64encode(json.dumps({"userId": ""}).encode()).decode(),
    base64.urlsafe_b64encode(json.dumps({"userId": "victim"}).encode()).decode(),
    base64.urlsafe_b64encode(json.dumps({"userId": "victim", "nonce": "x"}).encode()).decode(),
    base64.urlsafe_b64encode(json.dumps({"userId": "victim", "nonce": "abc.def"}).encode()).decode(),
])
def test_untrustworthy_state_is_rejected(state):
    with pytest.raises(InvalidAuthStateError):
        decode_state(state, SECRET)


def test_state_cannot_be_moved_to_another_user():
    genuine = decode_state(encode_state("attacker", SECRET), SECRET)
    forged = base64.urlsafe_b64encode(
        json.dumps({"userId": "victim", "nonce": genuine["nonce"]}).encode()
    ).decode()

    with pytest.raises(InvalidAuthStateError):
        decode_state(forged, SECRET)


def test_state_signed_with_another_secret_is_rejected():
    with pytest.raises(InvalidAuthStateError):
        decode_state(encode_state("user-42", "some-other-secret"), SECRET)


def test_build_authorization_url(auth_flow):
    url, state = auth_flow.build_authorization_url("user-1")
    query = _query(url)
    assert url.startswith("https://auth.example.com/open/authorize?")
    assert query["app_key"] == "test_app_key"
    assert query["state"] == state
    assert decode_state(state, SECRET)["userId"] == "user-1"


"""
2. Callback Tests
"""

async def test_bad_state_is_rejected_before_any_exchange(auth_flow, mock_client):
    result = await auth_flow.complete_callback("code", "garbage")

    assert result.state == AuthFlowState.FAILED
    assert _query(result.redirect_url) == {"error": "tiktok_auth_failed"}
    mock_client.get_access_token.assert_not_awaited()


async def test_missing_code_fails(auth_flow, mock_client):
    result = await auth_flow.complete_callback(None, encode_state("user-1", SECRET))

    assert result.state == AuthFlowState.FAILED
    mock_client.get_access_token.assert_not_awaited()


async def test_callback_links_every_shop(auth_flow, mock_client, make_tokens, credential_store):
    mock_client.get_access_token.return_value = make_tokens()
    mock_client.get_authorized_shops.return_value = [
        TikTokShop(id="s1", cipher="c1", name="One"),
        TikTokShop(id="s2", cipher="c2", name="Two"),
    ]

    result = await auth_flow.complete_callback("code", encode_state("user-1", SECRET))

    assert result.state == AuthFlowState.LINKED
    assert result.redirect_url == "https://app.example.com/dashboard/integrations?tiktok=connected"
    assert len(result.connection_ids) == 2
    connections = await credential_store.list_for_user("user-1")
    assert {c.shop_id for c in connections} == {"s1", "s2"}
    assert all(c.access_token == "new-access" for c in connections)


async def test_reauthorizing_updates_the_same_connection(auth_flow, mock_client, make_tokens, credential_store):
    mock_client.get_authorized_shops.return_value = [TikTokShop(id="s1", cipher="c1")]
    mock_client.get_access_token.return_value = make_tokens(access_token="first")
    first = await auth_flow.complete_callback("code-1", encode_state("user-1", SECRET))

    mock_client.get_access_token.return_value = make_tokens(access_token="second")
    second = await auth_flow.complete_callback("code-2", encode_state("user-1", SECRET))

    assert first.connection_ids == second.connection_ids
    connections = await credential_store.list_for_user("user-1")
    assert len(connections) == 1
    assert connections[0].access_token == "second"


async def test_shop_listing_failure_links_pending_shops(auth_flow, mock_client, make_tokens, credential_store):
    mock_client.get_access_token.return_value = make_tokens()
    mock_client.get_authorized_shops.side_effect = TikTokTransportError("timeout")

    result = await auth_flow.complete_callback("code", encode_state("user-1", SECRET))

    assert result.state == AuthFlowState.LINKED_PENDING_SHOPS
    assert _query(result.redirect_url) == {"tiktok": "connected"}
    connection = await credential_store.get(result.connection_ids[0])
    assert connection.shop_id is None
    assert connection.access_token == "new-access"


async def test_exchange_failure_never_leaks_platform_text(auth_flow, mock_client, credential_store):
    mock_client.get_access_token.side_effect = TikTokAPIError(36004004, "auth code expired: secret detail")

    result = await auth_flow.complete_callback("code", encode_state("user-1", SECRET))

    assert result.state == AuthFlowState.FAILED
    assert "secret detail" not in result.redirect_url
    assert _query(result.redirect_url) == {"error": "tiktok_auth_failed"}
    assert await credential_store.list_for_user("user-1") == []


async def test_forged_state_for_another_user_links_nothing(auth_flow, mock_client, make_tokens, credential_store):
    mock_client.get_access_token.return_value = make_tokens()
    mock_client.get_authorized_shops.return_value = [TikTokShop(id="s1", cipher="c1")]
    forged = base64.urlsafe_b64encode(json.dumps({"userId": "victim", "nonce": "x"}).encode()).decode().rstrip("=")

    result = await auth_flow.complete_callback("code", forged)

    assert result.state == AuthFlowState.FAILED
    mock_client.get_access_token.assert_not_awaited()
    assert await credential_store.list_for_user("victim") == []


async def test_repeated_pending_authorization_keeps_one_connection(auth_flow, mock_client, make_tokens, credential_store):
    mock_client.get_authorized_shops.side_effect = TikTokTransportError("timeout")
    results = []
    for token in ("first", "second", "third"):
        mock_client.get_access_token.return_value = make_tokens(access_token=token)
        results.append(await auth_flow.complete_callback("code", encode_state("user-9", SECRET)))

    assert {tuple(result.connection_ids) for result in results} == {tuple(results[0].connection_ids)}
    connections = await credential_store.list_for_user("user-9")
    assert len(connections) == 1
    assert connections[0].access_token == "third"
