"""MIME extraction: raw RFC 822 bytes → sender, subject, date and PDF parts."""

from __future__ import annotations

import email
import email.errors
import email.policy
import email.utils
from datetime import UTC, datetime

from .errors import ParseError
from .models import ParsedAttachment, ParsedMessage

PDF_CONTENT_TYPE = "application/pdf"
DEFAULT_PDF_NAME = "unnamed.pdf"
UNDATED_AT = datetime(1970, 1, 1, tzinfo=UTC)

_FATAL_DEFECTS = (
    email.errors.NoBoundaryInMultipartDefect,
    email.errors.StartBoundaryNotFoundDefect,
    email.errors.MultipartInvariantViolationDefect,
)


def is_pdf(content_type: str | None) -> bool:
    """Case-insensitive match on the PDF MIME type, ignoring parameters."""
    if not content_type:
        return False
    return content_type.split(";", 1)[0].strip().lower() == PDF_CONTENT_TYPE


def _parse_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def parse_received_at(value: str | None, received: list[str] | None = None) -> datetime:
    """Timestamp of a message as an aware UTC datetime.

    Uses the ``Date`` header, then the newest parseable ``Received`` stamp
    (the text after its last ``;``), then :data:`UNDATED_AT`.  The result
    must be the same on every fetch of the same message, since it is part
    of the attachment record key.
    """
    parsed = _parse_date(value)
    if parsed is not None:
        return parsed
    for line in received or []:
        parsed = _parse_date(line.rpartition(";")[2].strip())
        if parsed is not None:
            return parsed
    return UNDATED_AT


def sender_address(value: str | None) -> str:
    """Bare address of the first mailbox in a From header."""
    if not value:
        return ""
    for _, addr in email.utils.getaddresses([value]):
        if addr:
            return addr
    return value.strip()


class MessageExtractor:
    """Stateless parser: raw RFC 822 bytes → ParsedMessage with PDF parts only.

    Non-PDF attachments are dropped silently.  Anything that makes the
    message unreadable raises :class:`ParseError`, which callers treat as
    isolated to that one message.
    """

    def extract(self, raw_bytes: bytes) -> ParsedMessage:
        if not raw_bytes or not raw_bytes.strip():
            raise ParseError("empty message")

        try:
            msg = email.message_from_bytes(raw_bytes, policy=email.policy.default)
            self._check_structure(msg)
            return ParsedMessage(
                from_address=sender_address(_header(msg, "From")),
                subject=_header(msg, "Subject") or "",
                received_at=parse_received_at(
                    _header(msg, "Date"), [str(v) for v in msg.get_all("Received") or []]
                ),
                message_id=_header(msg, "Message-ID") or "",
                attachments=self._extract_pdfs(msg),
            )
        except ParseError:
            raise
        except Exception as exc:
            raise ParseError(f"malformed MIME: {exc}") from exc

    def _check_structure(self, msg: email.message.Message) -> None:
        if not msg.keys():
            raise ParseError("no header block")
        for part in msg.walk():
            for defect in part.defects:
                if isinstance(defect, _FATAL_DEFECTS):
                    raise ParseError(f"broken multipart structure: {type(defect).__name__}")

    def _extract_pdfs(self, msg: email.message.Message) -> list[ParsedAttachment]:
        attachments: list[ParsedAttachment] = []

        for part in msg.walk():
            if part.get_content_maintype() == "multipart":
                continue
            if not is_pdf(part.get_content_type()):
                continue

            payload = part.get_payload(decode=True)
            if not payload:
                continue

            attachments.append(
                ParsedAttachment(
                    filename=part.get_filename() or DEFAULT_PDF_NAME,
                    content_type=PDF_CONTENT_TYPE,
                    content=payload,
                )
            )

        return attachments


def _header(msg: email.message.Message, name: str) -> str | None:
    value = msg.get(name)
    return str(value) if value is not None else None
