"""Microsoft Graph (Outlook) mail adapter.

Uses the stored bearer token as is; Graph tokens are refreshed by whoever
manages account configuration.  A 401 from Graph therefore means the
account needs re-authorization.
"""

from __future__ import annotations

import base64
import binascii
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

import httpx
import structlog

from ..config import OutlookConfig, RetryConfig
from ..errors import AuthRefreshError, FetchError, MailboxConnectionError, ParseError
from ..models import (
    ConnectionProfile,
    MessageRef,
    ParsedAttachment,
    ParsedMessage,
    ProtocolKind,
    SyncCriteria,
    SyncWindow,
)
from ..parser import DEFAULT_PDF_NAME, PDF_CONTENT_TYPE, UNDATED_AT, MessageExtractor, is_pdf
from .base import ProtocolAdapter
from .rest import RestSession

logger = structlog.get_logger()

_FILE_ATTACHMENT = "#microsoft.graph.fileAttachment"
_SELECT = "id,subject,from,sender,receivedDateTime,internetMessageId"


def graph_filter(window: SyncWindow) -> str:
    if window.criteria is SyncCriteria.SINCE_TIMESTAMP and window.since is not None:
        since = window.since.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
        return f"hasAttachments eq true and receivedDateTime ge {since}"
    return "hasAttachments eq true and isRead eq false"


def _message_path(message_id: str) -> str:
    return f"/me/messages/{quote(message_id, safe='')}"


def _address(data: dict[str, Any]) -> str:
    for key in ("from", "sender"):
        address = (data.get(key) or {}).get("emailAddress", {}).get("address")
        if address:
            return address
    return ""


def _received_at(value: str | None) -> datetime:
    if not value:
        return UNDATED_AT
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


class OutlookSession(RestSession):
    def __init__(
        self,
        profile: ConnectionProfile,
        client: httpx.AsyncClient,
        config: OutlookConfig,
        retry: RetryConfig,
        extractor: MessageExtractor,
    ) -> None:
        super().__init__(profile, client, retry, extractor)
        self._config = config

    async def list_candidates(self, window: SyncWindow) -> AsyncIterator[MessageRef]:
        url = "/me/messages"
        params: dict[str, Any] | None = {
            "$filter": graph_filter(window),
            "$select": _SELECT,
            "$top": self._config.page_size,
        }
        while url:
            response = await self._request(
                MailboxConnectionError, "Outlook message listing", "GET", url, params=params
            )
            data = response.json()
            for item in data.get("value", []):
                yield MessageRef(id=item["id"], metadata=item)
            # nextLink already carries the query string.
            url = data.get("@odata.nextLink")
            params = None

    async def fetch_raw(self, ref: MessageRef) -> bytes:
        response = await self._request(
            FetchError, f"Outlook MIME fetch of {ref.id}", "GET", f"{_message_path(ref.id)}/$value"
        )
        return response.content

    async def fetch_message(self, ref: MessageRef) -> ParsedMessage:
        meta = ref.metadata
        if not meta:
            response = await self._request(
                FetchError, f"Outlook fetch of {ref.id}", "GET", _message_path(ref.id),
                params={"$select": _SELECT},
            )
            meta = response.json()

        response = await self._request(
            FetchError, f"Outlook attachment listing of {ref.id}", "GET",
            f"{_message_path(ref.id)}/attachments",
        )
        try:
            attachments = [
                self._to_attachment(item)
                for item in response.json().get("value", [])
                if item.get("@odata.type", _FILE_ATTACHMENT) == _FILE_ATTACHMENT
                and is_pdf(item.get("contentType"))
            ]
            return ParsedMessage(
                from_address=_address(meta),
                subject=meta.get("subject") or "",
                received_at=_received_at(meta.get("receivedDateTime")),
                message_id=meta.get("internetMessageId") or "",
                attachments=attachments,
            )
        except (KeyError, TypeError, ValueError, binascii.Error) as exc:
            raise ParseError(f"unexpected Graph message structure for {ref.id}: {exc}") from exc

    @staticmethod
    def _to_attachment(item: dict[str, Any]) -> ParsedAttachment:
        content_bytes = item.get("contentBytes")
        return ParsedAttachment(
            filename=item.get("name") or DEFAULT_PDF_NAME,
            content_type=PDF_CONTENT_TYPE,
            content=base64.b64decode(content_bytes) if content_bytes else None,
            attachment_id=item["id"],
        )

    async def load_attachment(self, ref: MessageRef, attachment: ParsedAttachment) -> bytes:
        if attachment.content is not None:
            return attachment.content
        if not attachment.attachment_id:
            raise FetchError(f"attachment {attachment.filename!r} of {ref.id} has no id")
        response = await self._request(
            FetchError,
            f"Outlook attachment download {attachment.filename!r} of {ref.id}",
            "GET",
            f"{_message_path(ref.id)}/attachments/{quote(attachment.attachment_id, safe='')}/$value",
        )
        return response.content

    async def mark_consumed(self, ref: MessageRef) -> None:
        await self._request(
            FetchError, f"Outlook mark-read on {ref.id}", "PATCH", _message_path(ref.id),
            json={"isRead": True},
        )


class OutlookAdapter(ProtocolAdapter):
    kind = ProtocolKind.OUTLOOK_API

    def __init__(
        self,
        config: OutlookConfig,
        retry: RetryConfig,
        extractor: MessageExtractor | None = None,
    ) -> None:
        self._config = config
        self._retry = retry
        self._extractor = extractor or MessageExtractor()

    async def connect(self, profile: ConnectionProfile) -> OutlookSession:
        if profile.token is None or not profile.token.get_secret_value():
            raise AuthRefreshError("Outlook access token is missing; re-authorization required")

        client = httpx.AsyncClient(
            base_url=self._config.api_base_url,
            headers={"Authorization": f"Bearer {profile.token.get_secret_value()}"},
            timeout=self._config.timeout_seconds,
        )
        try:
            await self._verify(client)
        except BaseException:
            await client.aclose()
            raise
        logger.info("outlook_connected", account=profile.email_address)
        return OutlookSession(profile, client, self._config, self._retry, self._extractor)

    async def _verify(self, client: httpx.AsyncClient) -> None:
        try:
            response = await client.get("/me", params={"$select": "id"})
        except httpx.HTTPError as exc:
            raise MailboxConnectionError(f"Outlook connection failed: {exc}") from exc
        if response.status_code == 401:
            raise AuthRefreshError("Auth token expired - requires reauthorization")
        if response.is_error:
            raise MailboxConnectionError(f"Outlook connection failed with HTTP {response.status_code}")
