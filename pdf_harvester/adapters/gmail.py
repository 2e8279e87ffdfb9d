"""Gmail REST API adapter.

A fresh access token is obtained from the stored refresh token at the
start of every session.  Candidates are found with Gmail search syntax,
attachments are downloaded one by one, and a message is consumed by
removing its ``UNREAD`` label.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any

import httpx
import structlog

from ..config import GmailConfig, RetryConfig
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
from ..parser import DEFAULT_PDF_NAME, PDF_CONTENT_TYPE, MessageExtractor, is_pdf, parse_received_at, sender_address
from .base import ProtocolAdapter
from .rest import RestSession, decode_base64url

logger = structlog.get_logger()

_MESSAGES = "/users/me/messages"


def gmail_query(window: SyncWindow) -> str:
    if window.criteria is SyncCriteria.SINCE_TIMESTAMP and window.since is not None:
        return f"has:attachment after:{int(window.since.timestamp())}"
    return "has:attachment is:unread"


def _headers(payload: dict[str, Any]) -> dict[str, str]:
    return {h["name"].lower(): h.get("value", "") for h in payload.get("headers", [])}


def _walk_parts(part: dict[str, Any]) -> list[dict[str, Any]]:
    found = [part]
    for child in part.get("parts", []) or []:
        found.extend(_walk_parts(child))
    return found


class GmailSession(RestSession):
    def __init__(
        self,
        profile: ConnectionProfile,
        client: httpx.AsyncClient,
        config: GmailConfig,
        retry: RetryConfig,
        extractor: MessageExtractor,
    ) -> None:
        super().__init__(profile, client, retry, extractor)
        self._config = config

    async def list_candidates(self, window: SyncWindow) -> AsyncIterator[MessageRef]:
        params: dict[str, Any] = {"q": gmail_query(window), "maxResults": self._config.page_size}
        pages = 0
        while True:
            response = await self._request(
                MailboxConnectionError, "Gmail message listing", "GET", _MESSAGES, params=params
            )
            data = response.json()
            pages += 1
            for item in data.get("messages", []) or []:
                yield MessageRef(id=item["id"])

            page_token = data.get("nextPageToken")
            if not page_token:
                break
            params = {**params, "pageToken": page_token}
        logger.debug("gmail_listing_done", query=params["q"], pages=pages)

    async def fetch_raw(self, ref: MessageRef) -> bytes:
        response = await self._request(
            FetchError, f"Gmail fetch of {ref.id}", "GET", f"{_MESSAGES}/{ref.id}",
            params={"format": "raw"},
        )
        raw = response.json().get("raw")
        if not raw:
            raise FetchError(f"Gmail message {ref.id} has no raw content")
        return decode_base64url(raw)

    async def fetch_message(self, ref: MessageRef) -> ParsedMessage:
        response = await self._request(
            FetchError, f"Gmail fetch of {ref.id}", "GET", f"{_MESSAGES}/{ref.id}",
            params={"format": "full"},
        )
        try:
            return self._to_message(response.json())
        except (KeyError, TypeError, ValueError) as exc:
            raise ParseError(f"unexpected Gmail message structure for {ref.id}: {exc}") from exc

    def _to_message(self, data: dict[str, Any]) -> ParsedMessage:
        payload = data["payload"]
        headers = _headers(payload)

        if data.get("internalDate"):
            received_at = datetime.fromtimestamp(int(data["internalDate"]) / 1000, UTC)
        else:
            received_at = parse_received_at(headers.get("date"))

        attachments = []
        for part in _walk_parts(payload):
            if not is_pdf(part.get("mimeType")):
                continue
            body = part.get("body", {})
            filename = part.get("filename") or DEFAULT_PDF_NAME
            if body.get("attachmentId"):
                attachments.append(
                    ParsedAttachment(filename, PDF_CONTENT_TYPE, attachment_id=body["attachmentId"])
                )
            elif body.get("data"):
                attachments.append(
                    ParsedAttachment(filename, PDF_CONTENT_TYPE, content=decode_base64url(body["data"]))
                )

        return ParsedMessage(
            from_address=sender_address(headers.get("from")),
            subject=headers.get("subject", ""),
            received_at=received_at,
            message_id=headers.get("message-id", ""),
            attachments=attachments,
        )

    async def load_attachment(self, ref: MessageRef, attachment: ParsedAttachment) -> bytes:
        if attachment.content is not None:
            return attachment.content
        if not attachment.attachment_id:
            raise FetchError(f"attachment {attachment.filename!r} of {ref.id} has no id")
        response = await self._request(
            FetchError,
            f"Gmail attachment download {attachment.filename!r} of {ref.id}",
            "GET",
            f"{_MESSAGES}/{ref.id}/attachments/{attachment.attachment_id}",
        )
        data = response.json().get("data")
        if not data:
            raise FetchError(f"Gmail attachment {attachment.filename!r} of {ref.id} is empty")
        return decode_base64url(data)

    async def mark_consumed(self, ref: MessageRef) -> None:
        await self._request(
            FetchError, f"Gmail unread-label removal on {ref.id}", "POST",
            f"{_MESSAGES}/{ref.id}/modify", json={"removeLabelIds": ["UNREAD"]},
        )


class GmailAdapter(ProtocolAdapter):
    kind = ProtocolKind.GMAIL_API

    def __init__(
        self,
        config: GmailConfig,
        retry: RetryConfig,
        extractor: MessageExtractor | None = None,
    ) -> None:
        self._config = config
        self._retry = retry
        self._extractor = extractor or MessageExtractor()

    async def connect(self, profile: ConnectionProfile) -> GmailSession:
        if profile.token is None or not profile.token.get_secret_value():
            raise AuthRefreshError("Gmail refresh token is missing; re-authorization required")
        if not self._config.client_id or self._config.client_secret is None:
            raise MailboxConnectionError("Gmail OAuth client credentials are not configured")

        client = httpx.AsyncClient(
            base_url=self._config.api_base_url,
            timeout=self._config.timeout_seconds,
        )
        try:
            access_token = await self._refresh_access_token(client, profile)
        except BaseException:
            await client.aclose()
            raise
        client.headers["Authorization"] = f"Bearer {access_token}"
        logger.info("gmail_token_refreshed", account=profile.email_address)
        return GmailSession(profile, client, self._config, self._retry, self._extractor)

    async def _refresh_access_token(self, client: httpx.AsyncClient, profile: ConnectionProfile) -> str:
        form = {
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret.get_secret_value(),
            "refresh_token": profile.token.get_secret_value(),
            "grant_type": "refresh_token",
        }
        try:
            response = await client.post(self._config.token_url, data=form)
        except httpx.HTTPError as exc:
            raise MailboxConnectionError(f"Gmail token refresh failed: {exc}") from exc

        if response.is_error:
            reason = _oauth_error(response)
            if response.status_code == 401 or reason == "invalid_grant":
                raise AuthRefreshError(
                    f"Auth token expired - requires reauthorization ({response.status_code} {reason})"
                )
            raise MailboxConnectionError(
                f"Gmail token refresh failed with HTTP {response.status_code} {reason}"
            )

        try:
            access_token = response.json().get("access_token")
        except ValueError:
            access_token = None
        if not access_token:
            raise MailboxConnectionError("Gmail token endpoint returned no access token")
        return access_token


def _oauth_error(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return ""
    return body.get("error", "") if isinstance(body, dict) else ""
