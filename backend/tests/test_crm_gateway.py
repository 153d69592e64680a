# backend/tests/test_crm_gateway.py
"""HighLevel gateway: audio URL resolution, envelopes, error mapping."""

import json

import httpx
import pytest

from callscribe.services.crm_gateway import (
    CRMNotFoundError,
    CRMUnauthorizedError,
    CRMUpstreamError,
    resolve_audio_url,
)
from callscribe.utils.normalize import extract_call_event, unwrap_messages

from conftest import credentials, gateway_factory


def _gateway(handler):
    return gateway_factory(handler)(credentials())


# ============================================================================
# Audio URL resolution
# ============================================================================

class TestResolveAudioUrl:

    def test_attachment_url_wins_over_meta(self):
        message = {
            "attachments": [{"url": "https://files/direct.mp3"}],
            "meta": {"recording_url": "https://files/meta.mp3", "call": {"recording_url": "https://files/deep.mp3"}},
        }
        assert resolve_audio_url(message) == "https://files/direct.mp3"

    def test_attachment_as_plain_string(self):
        assert resolve_audio_url({"attachments": ["https://files/raw.wav"]}) == "https://files/raw.wav"

    def test_meta_recording_url(self):
        assert resolve_audio_url({"meta": {"recording_url": "https://files/meta.mp3"}}) == "https://files/meta.mp3"

    def test_only_call_meta(self):
        message = {"attachments": [], "meta": {"call": {"recording_url": "https://files/deep.mp3"}}}
        assert resolve_audio_url(message) == "https://files/deep.mp3"

    def test_nothing_found_returns_none(self):
        assert resolve_audio_url({}) is None
        assert resolve_audio_url({"attachments": [{}], "meta": {"call": {}}}) is None
        assert resolve_audio_url({"attachments": [""], "meta": "not-a-dict"}) is None

    def test_message_envelope_is_unwrapped(self):
        assert resolve_audio_url({"message": {"attachments": ["https://files/x.mp3"]}}) == "https://files/x.mp3"


# ============================================================================
# Payload normalization
# ============================================================================

class TestCallEventExtraction:

    def test_camel_case(self):
        event = extract_call_event({"type": "CallFinished", "contactId": "c1", "messageId": "m1", "locationId": "l1"})
        assert (event.contact_id, event.message_id, event.location_id) == ("c1", "m1", "l1")
        assert event.event_type == "CallFinished"

    def test_snake_case(self):
        event = extract_call_event({"contact_id": "c1", "message_id": "m1", "location_id": "l1"})
        assert (event.contact_id, event.message_id, event.location_id) == ("c1", "m1", "l1")

    def test_nested_objects(self):
        event = extract_call_event({"contact": {"id": "c1"}, "message": {"id": "m1"}, "location": {"id": "l1"}})
        assert (event.contact_id, event.message_id, event.location_id) == ("c1", "m1", "l1")

    def test_missing_message_and_blank_values(self):
        event = extract_call_event({"contactId": "  c1 ", "messageId": "", "locationId": None, "location": {"id": "l2"}})
        assert event.contact_id == "c1"
        assert event.message_id is None
        assert event.location_id == "l2"

    def test_non_dict_payload(self):
        event = extract_call_event(["nope"])
        assert event.contact_id is None and event.location_id is None

    def test_nested_message_list(self):
        assert len(unwrap_messages({"messages": {"messages": [{"id": "a"}, "junk"]}})) == 1
        assert len(unwrap_messages({"messages": [{"id": "a"}, {"id": "b"}]})) == 2
        assert unwrap_messages({"messages": None}) == []


# ============================================================================
# HTTP behaviour
# ============================================================================

class TestCRMGatewayHttp:

    @pytest.mark.asyncio
    async def test_fetch_message_sends_auth_and_unwraps(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["auth"] = request.headers.get("Authorization")
            seen["version"] = request.headers.get("Version")
            seen["path"] = request.url.path
            return httpx.Response(200, json={"message": {"id": "m1", "contactId": "c1"}})

        gateway = _gateway(handler)
        message = await gateway.fetch_message("m1")
        await gateway.aclose()

        assert message == {"id": "m1", "contactId": "c1"}
        assert seen == {"auth": "Bearer ghl-token-a", "version": "2021-07-28", "path": "/conversations/messages/m1"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,exc",
        [(404, CRMNotFoundError), (401, CRMUnauthorizedError), (403, CRMUnauthorizedError), (502, CRMUpstreamError)],
    )
    async def test_error_mapping(self, status, exc):
        gateway = _gateway(lambda request: httpx.Response(status, text="upstream says no"))
        with pytest.raises(exc) as info:
            await gateway.fetch_message("m1")
        await gateway.aclose()
        assert info.value.status_code == status
        assert "upstream says no" in info.value.details

    @pytest.mark.asyncio
    async def test_transport_error_is_upstream(self):
        def handler(request):
            raise httpx.ConnectError("dns failure", request=request)

        gateway = _gateway(handler)
        with pytest.raises(CRMUpstreamError) as info:
            await gateway.fetch_message("m1")
        await gateway.aclose()
        assert info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_recording_download_path(self):
        def handler(request):
            assert request.url.path == "/conversations/messages/m1/locations/loc1/recording"
            return httpx.Response(200, content=b"RIFF....WAVE")

        gateway = _gateway(handler)
        assert await gateway.fetch_recording_bytes("m1") == b"RIFF....WAVE"
        await gateway.aclose()

    @pytest.mark.asyncio
    async def test_empty_recording_is_not_found(self):
        gateway = _gateway(lambda request: httpx.Response(200, content=b""))
        with pytest.raises(CRMNotFoundError):
            await gateway.fetch_recording_bytes("m1")
        await gateway.aclose()

    @pytest.mark.asyncio
    async def test_list_messages_keeps_calls_newest_first(self):
        payload = {
            "messages": {
                "messages": [
                    {"id": "old", "messageType": "TYPE_CALL", "dateAdded": "2024-05-01T10:00:00.000Z"},
                    {"id": "sms", "messageType": "TYPE_SMS", "dateAdded": "2024-05-03T10:00:00.000Z"},
                    {"id": "new", "messageType": "TYPE_CALL", "dateAdded": "2024-05-02T10:00:00.000Z"},
                ]
            }
        }
        gateway = _gateway(lambda request: httpx.Response(200, json=payload))
        calls = await gateway.list_messages("conv1")
        await gateway.aclose()
        assert [m["id"] for m in calls] == ["new", "old"]

    @pytest.mark.asyncio
    async def test_find_latest_call_across_conversations(self):
        def handler(request: httpx.Request):
            if request.url.path == "/conversations/search":
                assert request.url.params["contactId"] == "c1"
                assert request.url.params["locationId"] == "loc1"
                return httpx.Response(200, json={"conversations": [{"id": "conv1"}, {"id": "conv2"}]})
            if request.url.path == "/conversations/conv1/messages":
                return httpx.Response(200, json={"messages": {"messages": [
                    {"id": "m10", "messageType": "TYPE_CALL", "dateAdded": "2024-05-01T10:00:00Z"},
                ]}})
            if request.url.path == "/conversations/conv2/messages":
                return httpx.Response(200, json={"messages": {"messages": [
                    {"id": "m42", "messageType": "TYPE_CALL", "dateAdded": "2024-05-04T10:00:00Z"},
                    {"id": "m43", "messageType": "TYPE_EMAIL", "dateAdded": "2024-05-05T10:00:00Z"},
                ]}})
            return httpx.Response(404)

        gateway = _gateway(handler)
        assert await gateway.find_latest_call_message_id("c1") == "m42"
        await gateway.aclose()

    @pytest.mark.asyncio
    async def test_find_latest_call_none(self):
        gateway = _gateway(lambda request: httpx.Response(200, json={"conversations": []}))
        assert await gateway.find_latest_call_message_id("c1") is None
        await gateway.aclose()

    @pytest.mark.asyncio
    async def test_post_note(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"note": {"id": "n1"}})

        gateway = _gateway(handler)
        await gateway.post_note("c1", "Call Summary")
        await gateway.aclose()
        assert seen == {"method": "POST", "path": "/contacts/c1/notes", "body": {"body": "Call Summary"}}
