"""Unit tests for DispatchClient (Expo push API adapter)."""

from contextlib import contextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from pydantic import SecretStr

from pushlink.services.dispatch_client import (
    DeliveryOutcome,
    DispatchClient,
    NotificationRequest,
    PushMessage,
)


def _messages(n: int, deep_link: str = "app://resource/42") -> list[PushMessage]:
    request = NotificationRequest(
        recipient_user_id="user-1",
        title="New reply",
        body="Someone answered your question",
        payload={"url": deep_link},
    )
    return [PushMessage(address=f"ExponentPushToken[device-{i:04d}]", request=request) for i in range(n)]


def _response(status_code=200, body=None, text=""):
    resp = MagicMock(status_code=status_code, text=text)
    resp.json.return_value = body
    return resp


def _ok_tickets_for(payload):
    return _response(body={"data": [{"status": "ok", "id": f"ticket-{m['to']}"} for m in payload]})


@contextmanager
def _patched_http(mock_client):
    with patch("pushlink.services.dispatch_client.httpx.AsyncClient") as mock_cls, \
         patch("pushlink.services.dispatch_client.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        mock_cls.return_value.__aenter__ = AsyncMock(return_value=mock_client)
        mock_cls.return_value.__aexit__ = AsyncMock(return_value=False)
        yield mock_cls, mock_sleep


@pytest.fixture
def client(settings):
    return DispatchClient(settings)


class TestSend:
    @pytest.mark.asyncio
    async def test_empty_input_makes_no_call(self, client):
        with patch("pushlink.services.dispatch_client.httpx.AsyncClient") as mock_cls:
            assert await client.send([]) == []
        mock_cls.assert_not_called()

    @pytest.mark.asyncio
    async def test_single_batch_all_ok(self, client, settings):
        messages = _messages(3)
        mock_client = AsyncMock()
        mock_client.post.side_effect = lambda url, json: _ok_tickets_for(json)

        with _patched_http(mock_client):
            receipts = await client.send(messages)

        assert [r.outcome for r in receipts] == [DeliveryOutcome.OK] * 3
        assert [r.address for r in receipts] == [m.address for m in messages]
        assert receipts[0].provider_message_id == f"ticket-{messages[0].address}"

        mock_client.post.assert_called_once()
        url = mock_client.post.call_args.args[0]
        sent = mock_client.post.call_args.kwargs["json"]
        assert url == settings.push_api_url
        assert sent[0]["to"] == messages[0].address
        assert sent[0]["title"] == "New reply"
        assert sent[0]["data"] == {"url": "app://resource/42"}

    @pytest.mark.asyncio
    async def test_oversized_input_is_split_and_order_preserved(self, settings):
        settings.push_batch_size = 2
        client = DispatchClient(settings)
        messages = _messages(5)
        mock_client = AsyncMock()
        mock_client.post.side_effect = lambda url, json: _ok_tickets_for(json)

        with _patched_http(mock_client):
            receipts = await client.send(messages)

        assert mock_client.post.call_count == 3
        batch_sizes = sorted(len(c.kwargs["json"]) for c in mock_client.post.call_args_list)
        assert batch_sizes == [1, 2, 2]
        assert [r.address for r in receipts] == [m.address for m in messages]
        assert [r.provider_message_id for r in receipts] == [f"ticket-{m.address}" for m in messages]

    @pytest.mark.asyncio
    async def test_per_message_errors_map_to_outcomes(self, client):
        messages = _messages(5)
        tickets = [
            {"status": "ok", "id": "t0"},
            {"status": "error", "message": "not registered", "details": {"error": "DeviceNotRegistered"}},
            {"status": "ok", "id": "t2"},
            {"status": "error", "message": "too big", "details": {"error": "MessageTooBig"}},
            {"status": "error", "message": "slow down", "details": {"error": "MessageRateExceeded"}},
        ]
        mock_client = AsyncMock()
        mock_client.post.return_value = _response(body={"data": tickets})

        with _patched_http(mock_client):
            receipts = await client.send(messages)

        assert [r.outcome for r in receipts] == [
            DeliveryOutcome.OK,
            DeliveryOutcome.INVALID_ADDRESS,
            DeliveryOutcome.OK,
            DeliveryOutcome.TRANSIENT_ERROR,
            DeliveryOutcome.RATE_LIMITED,
        ]
        assert receipts[1].error == "DeviceNotRegistered"

    @pytest.mark.asyncio
    async def test_timeout_on_every_attempt_yields_transient_receipts(self, client):
        messages = _messages(4)
        mock_client = AsyncMock()
        mock_client.post.side_effect = httpx.ReadTimeout("timed out")

        with _patched_http(mock_client) as (_, mock_sleep):
            receipts = await client.send(messages)

        assert mock_client.post.call_count == 3
        assert [r.outcome for r in receipts] == [DeliveryOutcome.TRANSIENT_ERROR] * 4
        assert [r.address for r in receipts] == [m.address for m in messages]
        # Exponential backoff between attempts, none after the last one
        assert [c.args[0] for c in mock_sleep.call_args_list] == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_recovers_after_server_error(self, client):
        messages = _messages(2)
        mock_client = AsyncMock()
        mock_client.post.side_effect = [
            _response(status_code=503, text="unavailable"),
            httpx.ConnectError("connection refused"),
            _ok_tickets_for([m.to_provider() for m in messages]),
        ]

        with _patched_http(mock_client):
            receipts = await client.send(messages)

        assert mock_client.post.call_count == 3
        assert [r.outcome for r in receipts] == [DeliveryOutcome.OK] * 2

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, client):
        mock_client = AsyncMock()
        mock_client.post.return_value = _response(status_code=400, text='{"errors": []}')

        with _patched_http(mock_client) as (_, mock_sleep):
            receipts = await client.send(_messages(2))

        assert mock_client.post.call_count == 1
        mock_sleep.assert_not_called()
        assert all(r.outcome == DeliveryOutcome.TRANSIENT_ERROR for r in receipts)

    @pytest.mark.asyncio
    async def test_ticket_count_mismatch_is_not_guessed(self, client):
        mock_client = AsyncMock()
        mock_client.post.return_value = _response(body={"data": [{"status": "ok", "id": "only-one"}]})

        with _patched_http(mock_client):
            receipts = await client.send(_messages(3))

        assert [r.outcome for r in receipts] == [DeliveryOutcome.TRANSIENT_ERROR] * 3
        assert all(r.provider_message_id is None for r in receipts)

    @pytest.mark.asyncio
    async def test_unexpected_exception_does_not_escape(self, client):
        mock_client = AsyncMock()
        mock_client.post.side_effect = RuntimeError("boom")

        with _patched_http(mock_client):
            receipts = await client.send(_messages(1))

        assert receipts[0].outcome == DeliveryOutcome.TRANSIENT_ERROR

    @pytest.mark.asyncio
    async def test_access_token_sent_as_bearer(self, settings):
        settings.push_access_token = SecretStr("expo-access-token")
        client = DispatchClient(settings)
        mock_client = AsyncMock()
        mock_client.post.side_effect = lambda url, json: _ok_tickets_for(json)

        with _patched_http(mock_client) as (mock_cls, _):
            await client.send(_messages(1))

        headers = mock_cls.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer expo-access-token"
        assert mock_cls.call_args.kwargs["timeout"] == settings.push_timeout_seconds


class TestFetchReceipts:
    @pytest.mark.asyncio
    async def test_maps_receipts_by_ticket_id(self, client, settings):
        mock_client = AsyncMock()
        mock_client.post.return_value = _response(
            body={
                "data": {
                    "t1": {"status": "ok"},
                    "t2": {"status": "error", "details": {"error": "DeviceNotRegistered"}},
                }
            }
        )

        with _patched_http(mock_client):
            receipts = await client.fetch_receipts(["t1", "t2", "t3"])

        assert mock_client.post.call_args.args[0] == settings.push_receipts_url
        assert mock_client.post.call_args.kwargs["json"] == {"ids": ["t1", "t2", "t3"]}
        assert receipts["t1"].outcome == DeliveryOutcome.OK
        assert receipts["t2"].outcome == DeliveryOutcome.INVALID_ADDRESS
        assert "t3" not in receipts

    @pytest.mark.asyncio
    async def test_failed_lookup_returns_nothing(self, client):
        mock_client = AsyncMock()
        mock_client.post.side_effect = httpx.ConnectError("down")

        with _patched_http(mock_client):
            assert await client.fetch_receipts(["t1"]) == {}

    @pytest.mark.asyncio
    async def test_no_ids_no_call(self, client):
        with patch("pushlink.services.dispatch_client.httpx.AsyncClient") as mock_cls:
            assert await client.fetch_receipts([]) == {}
        mock_cls.assert_not_called()


class TestBackoff:
    def test_backoff_doubles(self, client):
        assert [client.backoff_delay(n) for n in (1, 2, 3)] == [0.5, 1.0, 2.0]
