"""Shared plumbing for the HTTP/JSON mail APIs (Gmail, Microsoft Graph)."""

from __future__ import annotations

import base64
import binascii

import httpx
import structlog

from ..config import RetryConfig
from ..errors import FetchError, HarvesterError
from ..models import ConnectionProfile
from ..parser import MessageExtractor
from ..retry import with_retry
from .base import MailSession

logger = structlog.get_logger()


def decode_base64url(data: str) -> bytes:
    """Decode URL-safe base64 with or without padding."""
    try:
        return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))
    except (binascii.Error, ValueError) as exc:
        raise FetchError(f"undecodable base64 payload: {exc}") from exc


class RestSession(MailSession):
    """A session backed by an authenticated ``httpx.AsyncClient``.

    Requests are retried with Tenacity on transport errors, 429 and 5xx
    responses.  Any failure left after retries is re-raised as the error
    class the caller asks for.
    """

    def __init__(
        self,
        profile: ConnectionProfile,
        client: httpx.AsyncClient,
        retry: RetryConfig,
        extractor: MessageExtractor,
    ) -> None:
        super().__init__(profile, extractor)
        self._client = client
        self._retry = retry

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        @with_retry(self._retry)
        async def _attempt() -> httpx.Response:
            response = await self._client.request(method, url, **kwargs)
            response.raise_for_status()
            return response

        return await _attempt()

    async def _request(
        self,
        error: type[HarvesterError],
        what: str,
        method: str,
        url: str,
        **kwargs,
    ) -> httpx.Response:
        try:
            return await self._send(method, url, **kwargs)
        except httpx.HTTPStatusError as exc:
            raise error(f"{what} failed with HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise error(f"{what} failed: {exc}") from exc

    async def aclose(self) -> None:
        if not self._client.is_closed:
            await self._client.aclose()
            logger.debug("rest_session_closed", protocol=self.profile.protocol.value)
