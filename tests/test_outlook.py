"""Tests for pdf_harvester.adapters.outlook."""

from __future__ import annotations

import base64
import json
from datetime import UTC, datetime

import httpx
import pytest
import respx

from tests.conftest import make_profile

from pdf_harvester.adapters.outlook import OutlookAdapter, graph_filter
from pdf_harvester.config import OutlookConfig, RetryConfig
from pdf_harvester.errors import AuthRefreshError, FetchError, MailboxConnectionError
from pdf_harvester.models import MessageRef, ParsedAttachment, ProtocolKind, SyncCriteria, SyncWindow

GRAPH = "https://graph.test/v1.0"


def _graph_message(message_id: str = "AAMk1") -> dict:
    return {
        "id": message_id,
        "subject": "Quarterly statement",
        "from": {"emailAddress": {"name": "Bank", "address": "statements@bank.test"}},
        "receivedDateTime": "2025-06-01T12:00:00Z",
        "internetMessageId": "<q2@bank.test>",
    }


@pytest.fixture
def adapter(outlook_config: OutlookConfig, retry_config: RetryConfig) -> OutlookAdapter:
    return OutlookAdapter(outlook_config, retry_config)


@pytest.fixture
def profile():
    return make_profile(ProtocolKind.OUTLOOK_API, token="bearer-abc")


def _mock_me(status: int = 200) -> respx.Route:
    return respx.get(f"{GRAPH}/me").respond(status, json={"id": "user-1"})


class TestFilter:
    def test_unread_with_attachments(self):
        assert graph_filter(SyncWindow()) == "hasAttachments eq true and isRead eq false"

    def test_since(self):
        window = SyncWindow(SyncCriteria.SINCE_TIMESTAMP, datetime(2025, 6, 1, 8, 30, tzinfo=UTC))
        assert graph_filter(window) == "hasAttachments eq true and receivedDateTime ge 2025-06-01T08:30:00Z"


class TestConnect:
    @pytest.mark.asyncio
    @respx.mock
    async def test_connect_sends_bearer(self, adapter: OutlookAdapter, profile):
        route = _mock_me()
        session = await adapter.connect(profile)
        await session.aclose()
        assert route.calls[0].request.headers["authorization"] == "Bearer bearer-abc"

    @pytest.mark.asyncio
    @respx.mock
    async def test_rejected_token_is_auth_error(self, adapter: OutlookAdapter, profile):
        _mock_me(401)
        with pytest.raises(AuthRefreshError):
            await adapter.connect(profile)

    @pytest.mark.asyncio
    @respx.mock
    async def test_server_error_is_connection_error(self, adapter: OutlookAdapter, profile):
        _mock_me(500)
        with pytest.raises(MailboxConnectionError) as exc_info:
            await adapter.connect(profile)
        assert not isinstance(exc_info.value, AuthRefreshError)

    @pytest.mark.asyncio
    @respx.mock
    async def test_network_error_is_connection_error(self, adapter: OutlookAdapter, profile):
        respx.get(f"{GRAPH}/me").mock(side_effect=httpx.ConnectError("no route"))
        with pytest.raises(MailboxConnectionError):
            await adapter.connect(profile)

    @pytest.mark.asyncio
    async def test_missing_token(self, adapter: OutlookAdapter):
        with pytest.raises(AuthRefreshError):
            await adapter.connect(make_profile(ProtocolKind.OUTLOOK_API, token=None))


class TestSession:
    @pytest.mark.asyncio
    @respx.mock
    async def test_list_follows_next_link(self, adapter: OutlookAdapter, profile):
        _mock_me()
        next_link = f"{GRAPH}/me/messages?$skip=2&$top=2"
        route = respx.get(f"{GRAPH}/me/messages").mock(
            side_effect=[
                httpx.Response(200, json={"value": [_graph_message("a"), _graph_message("b")], "@odata.nextLink": next_link}),
                httpx.Response(200, json={"value": [_graph_message("c")]}),
            ]
        )
        async with await adapter.connect(profile) as session:
            refs = [ref async for ref in session.list_candidates(SyncWindow())]

        assert [r.id for r in refs] == ["a", "b", "c"]
        assert refs[0].metadata["subject"] == "Quarterly statement"
        first, second = route.calls
        assert first.request.url.params["$filter"] == "hasAttachments eq true and isRead eq false"
        assert second.request.url.params["$skip"] == "2"

    @pytest.mark.asyncio
    @respx.mock
    async def test_fetch_message_uses_listing_metadata(self, adapter: OutlookAdapter, profile):
        _mock_me()
        respx.get(f"{GRAPH}/me/messages/AAMk1/attachments").respond(
            200,
            json={
                "value": [
                    {
                        "@odata.type": "#microsoft.graph.fileAttachment",
                        "id": "att-1",
                        "name": "statement.pdf",
                        "contentType": "application/pdf",
                        "contentBytes": base64.b64encode(b"%PDF graph").decode(),
                    },
                    {
                        "@odata.type": "#microsoft.graph.fileAttachment",
                        "id": "att-2",
                        "name": "notes.txt",
                        "contentType": "text/plain",
                        "contentBytes": base64.b64encode(b"notes").decode(),
                    },
                    {
                        "@odata.type": "#microsoft.graph.itemAttachment",
                        "id": "att-3",
                        "name": "forwarded",
                        "contentType": "application/pdf",
                    },
                ]
            },
        )
        ref = MessageRef(id="AAMk1", metadata=_graph_message())
        async with await adapter.connect(profile) as session:
            message = await session.fetch_message(ref)
            content = await session.load_attachment(ref, message.attachments[0])

        assert message.from_address == "statements@bank.test"
        assert message.subject == "Quarterly statement"
        assert message.received_at == datetime(2025, 6, 1, 12, 0, tzinfo=UTC)
        assert [a.filename for a in message.attachments] == ["statement.pdf"]
        assert content == b"%PDF graph"

    @pytest.mark.asyncio
    @respx.mock
    async def test_fetch_message_without_metadata(self, adapter: OutlookAdapter, profile):
        _mock_me()
        detail = respx.get(f"{GRAPH}/me/messages/AAMk1").respond(200, json=_graph_message())
        respx.get(f"{GRAPH}/me/messages/AAMk1/attachments").respond(200, json={"value": []})
        async with await adapter.connect(profile) as session:
            message = await session.fetch_message(MessageRef(id="AAMk1"))
        assert detail.called
        assert message.attachments == []

    @pytest.mark.asyncio
    @respx.mock
    async def test_large_attachment_downloaded_by_value(self, adapter: OutlookAdapter, profile):
        _mock_me()
        route = respx.get(f"{GRAPH}/me/messages/AAMk1/attachments/att-9/$value").respond(
            200, content=b"%PDF big"
        )
        attachment = ParsedAttachment("big.pdf", "application/pdf", attachment_id="att-9")
        async with await adapter.connect(profile) as session:
            content = await session.load_attachment(MessageRef(id="AAMk1"), attachment)
        assert content == b"%PDF big"
        assert route.called

    @pytest.mark.asyncio
    @respx.mock
    async def test_attachment_listing_failure_is_fetch_error(self, adapter: OutlookAdapter, profile):
        _mock_me()
        respx.get(f"{GRAPH}/me/messages/AAMk1/attachments").respond(404)
        async with await adapter.connect(profile) as session:
            with pytest.raises(FetchError):
                await session.fetch_message(MessageRef(id="AAMk1", metadata=_graph_message()))

    @pytest.mark.asyncio
    @respx.mock
    async def test_fetch_raw(self, adapter: OutlookAdapter, profile, pdf_eml_bytes: bytes):
        _mock_me()
        respx.get(f"{GRAPH}/me/messages/AAMk1/$value").respond(200, content=pdf_eml_bytes)
        async with await adapter.connect(profile) as session:
            assert await session.fetch_raw(MessageRef(id="AAMk1")) == pdf_eml_bytes

    @pytest.mark.asyncio
    @respx.mock
    async def test_mark_consumed_patches_is_read(self, adapter: OutlookAdapter, profile):
        _mock_me()
        route = respx.patch(f"{GRAPH}/me/messages/AAMk1").respond(200, json={})
        async with await adapter.connect(profile) as session:
            await session.mark_consumed(MessageRef(id="AAMk1"))
        assert json.loads(route.calls[0].request.content) == {"isRead": True}
