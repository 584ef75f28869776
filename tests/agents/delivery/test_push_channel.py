"""
Tests for the Expo push channel.
"""
import json

import httpx
import pytest

from agents.delivery.channels import ExpoPushChannel
from agents.delivery.models import PUSH_TITLE, PushMessage
from backend.core.exceptions import PushDeliveryError


def expo(handler, access_token=None) -> ExpoPushChannel:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ExpoPushChannel(
        http_client=client,
        push_url="https://expo.test/--/api/v2/push/send",
        access_token=access_token,
    )


@pytest.fixture
def message() -> PushMessage:
    return PushMessage(
        to="ExponentPushToken[abc]",
        title=PUSH_TITLE,
        body="Northside Food Shelf - Sort donated groceries",
        data={"need_id": "n-1", "organization": "Northside Food Shelf", "why_relevant": "Close by"},
    )


class TestExpoPushChannel:
    """Tests for ExpoPushChannel.send."""

    @pytest.mark.asyncio
    async def test_accepted_ticket(self, message):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["body"] = json.loads(request.content)
            captured["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"data": {"status": "ok", "id": "ticket-123"}})

        receipt = await expo(handler).send(message)

        assert receipt.provider_message_id == "ticket-123"
        assert captured["body"]["to"] == "ExponentPushToken[abc]"
        assert captured["body"]["title"] == "You might be interested in this"
        assert captured["body"]["data"]["why_relevant"] == "Close by"
        assert captured["auth"] is None

    @pytest.mark.asyncio
    async def test_list_ticket_and_bearer_token(self, message):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"data": [{"status": "ok", "id": "ticket-9"}]})

        receipt = await expo(handler, access_token="expo-secret").send(message)

        assert receipt.provider_message_id == "ticket-9"
        assert captured["auth"] == "Bearer expo-secret"

    @pytest.mark.asyncio
    async def test_error_ticket(self, message):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "data": {
                        "status": "error",
                        "message": "not a registered push token",
                        "details": {"error": "DeviceNotRegistered"},
                    }
                },
            )

        with pytest.raises(PushDeliveryError) as exc_info:
            await expo(handler).send(message)

        assert exc_info.value.provider_error == "DeviceNotRegistered"

    @pytest.mark.asyncio
    async def test_http_error(self, message):
        with pytest.raises(PushDeliveryError):
            await expo(lambda request: httpx.Response(500, text="oops")).send(message)

    @pytest.mark.asyncio
    async def test_transport_error(self, message):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(PushDeliveryError):
            await expo(handler).send(message)

    @pytest.mark.asyncio
    async def test_malformed_response(self, message):
        with pytest.raises(PushDeliveryError) as exc_info:
            await expo(lambda request: httpx.Response(200, json={"errors": []})).send(message)

        assert exc_info.value.provider_error == "malformed_response"

    @pytest.mark.asyncio
    async def test_non_json_response(self, message):
        with pytest.raises(PushDeliveryError):
            await expo(lambda request: httpx.Response(200, content=b"gateway")).send(message)
