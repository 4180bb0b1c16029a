"""Gmail message parser: MIME tree walking, base64url decoding, plain-text body extraction."""

from __future__ import annotations

import base64
import logging
import re
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any

import trafilatura

from clinbox.core.exceptions import ParseError
from clinbox.core.models import MessageContent

logger = logging.getLogger(__name__)

# Everything below 0x20 except tab and newline, plus DEL.
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")


def sanitize_text(text: str) -> str:
    """Normalise newlines and strip control characters."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return _CONTROL_CHARS.sub("", text).strip()


def html_to_text(html: str) -> str | None:
    """Convert an HTML body to plain text via trafilatura, None if nothing usable."""
    try:
        return trafilatura.extract(
            html,
            output_format="txt",
            favor_recall=True,
            include_links=True,
            include_tables=True,
        )
    except Exception as e:
        logger.warning("Trafilatura extraction failed: %s", e)
        return None


class GmailParser:
    """Parses raw Gmail API message dicts into MessageContent objects."""

    def parse(self, raw_message: dict[str, Any]) -> MessageContent:
        """Parse a raw Gmail API message dict into MessageContent.

        Args:
            raw_message: Full message dict from Gmail API (format=full).

        Returns:
            Parsed MessageContent with a sanitized plain-text body.

        Raises:
            ParseError: If the message structure is invalid.
        """
        try:
            message_id = raw_message["id"]
            payload = raw_message.get("payload", {})
            headers = self._extract_headers(payload)
            snippet = raw_message.get("snippet", "")
            plain_text, html = self._extract_body(payload)

            return MessageContent(
                message_id=message_id,
                thread_id=raw_message.get("threadId", ""),
                sender=headers.get("from", ""),
                to=headers.get("to", ""),
                subject=headers.get("subject", "(no subject)"),
                date=self._parse_date(headers.get("date", "")),
                body=self._body_text(plain_text, html, snippet),
                snippet=snippet,
                label_ids=tuple(raw_message.get("labelIds", [])),
                message_id_header=headers.get("message-id", ""),
            )
        except ParseError:
            raise
        except Exception as e:
            raise ParseError(f"Failed to parse message {raw_message.get('id', '?')}: {e}") from e

    @staticmethod
    def _extract_headers(payload: dict[str, Any]) -> dict[str, str]:
        """Extract the headers we display or reply with, keyed by lowercase name."""
        headers: dict[str, str] = {}
        for h in payload.get("headers", []):
            name = h.get("name", "").lower()
            if name in ("subject", "from", "to", "date", "message-id"):
                headers[name] = h.get("value", "")
        return headers

    def _extract_body(self, payload: dict[str, Any]) -> tuple[str | None, str | None]:
        """Recursively walk the MIME tree to extract text/html bodies."""
        plain_text, html = self._walk_parts(payload)

        if plain_text is None and html is None:
            # Try the top-level body directly
            body_data = payload.get("body", {}).get("data")
            if body_data:
                decoded = self._decode_body(body_data)
                if "html" in payload.get("mimeType", ""):
                    html = decoded
                else:
                    plain_text = decoded

        return plain_text, html

    def _walk_parts(self, part: dict[str, Any]) -> tuple[str | None, str | None]:
        """Recursively walk MIME parts to find text/plain and text/html."""
        plain_text: str | None = None
        html: str | None = None
        mime_type = part.get("mimeType", "")

        if mime_type == "text/plain":
            data = part.get("body", {}).get("data")
            if data:
                plain_text = self._decode_body(data)
        elif mime_type == "text/html":
            data = part.get("body", {}).get("data")
            if data:
                html = self._decode_body(data)
        elif mime_type.startswith("multipart/"):
            for sub_part in part.get("parts", []):
                # Skip attachments
                if sub_part.get("filename"):
                    continue

                sub_plain, sub_html = self._walk_parts(sub_part)
                if sub_plain and not plain_text:
                    plain_text = sub_plain
                if sub_html and not html:
                    html = sub_html

        return plain_text, html

    @staticmethod
    def _body_text(plain_text: str | None, html: str | None, snippet: str) -> str:
        """Plain part first, then HTML converted to text, then the snippet."""
        if plain_text and plain_text.strip():
            return sanitize_text(plain_text)
        if html:
            converted = html_to_text(html)
            if converted:
                return sanitize_text(converted)
        return sanitize_text(snippet)

    @staticmethod
    def _decode_body(data: str) -> str:
        """Decode base64url-encoded body data."""
        # Gmail uses base64url encoding (RFC 4648 §5)
        padded = data + "=" * (4 - len(data) % 4) if len(data) % 4 else data
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")

    @staticmethod
    def _parse_date(date_str: str) -> datetime:
        """Parse an RFC 2822 date string, or epoch if parsing fails."""
        if not date_str:
            return datetime(1970, 1, 1)
        try:
            return parsedate_to_datetime(date_str)
        except Exception:
            logger.warning("Failed to parse date: %s", date_str)
            return datetime(1970, 1, 1)
