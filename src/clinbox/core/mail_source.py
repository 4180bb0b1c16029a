"""Gmail-backed MailSource used by the triage pipeline."""

from __future__ import annotations

import base64
import logging
from email.message import EmailMessage

from clinbox.core.exceptions import ParseError, RemoteError
from clinbox.core.gmail_client import GmailClient
from clinbox.core.models import MailOp, MessageContent, MessageRef, TriageFilter
from clinbox.core.parser import GmailParser

logger = logging.getLogger(__name__)

INBOX_LABEL = "INBOX"
UNREAD_LABEL = "UNREAD"
UNREAD_QUERY = "is:unread"

# Gmail caps a batch request at 100 calls; stay well under it.
FETCH_BATCH_SIZE = 50


class GmailMailSource:
    """Adapts GmailClient + GmailParser to the MailSource interface.

    Fetched contents are cached for the session so replies can reuse the
    original headers without another round trip.
    """

    def __init__(
        self,
        client: GmailClient,
        parser: GmailParser | None = None,
        *,
        page_size: int = 100,
        batch_size: int = FETCH_BATCH_SIZE,
    ) -> None:
        self._client = client
        self._parser = parser or GmailParser()
        self._page_size = page_size
        self._batch_size = batch_size
        self._contents: dict[str, MessageContent] = {}

    def list(self, triage_filter: TriageFilter) -> list[MessageRef]:
        query = UNREAD_QUERY if triage_filter.unread_only else None
        page_size = min(self._page_size, triage_filter.limit)
        refs: list[MessageRef] = []

        for page in self._client.discover_message_ids([INBOX_LABEL], page_size, query=query):
            for ref in page:
                refs.append(
                    MessageRef(message_id=ref.message_id, thread_id=ref.thread_id, position=len(refs))
                )
                if len(refs) >= triage_filter.limit:
                    break
            if len(refs) >= triage_filter.limit:
                break

        logger.info("Listed %d messages for %s", len(refs), triage_filter.canonical_key())
        return refs

    def fetch(self, message_id: str) -> MessageContent:
        if message_id in self._contents:
            return self._contents[message_id]
        content = self._parser.parse(self._client.get_message(message_id))
        self._contents[message_id] = content
        return content

    def fetch_many(self, message_ids: list[str]) -> list[MessageContent]:
        missing = [mid for mid in message_ids if mid not in self._contents]

        for start in range(0, len(missing), self._batch_size):
            chunk = missing[start:start + self._batch_size]
            for raw in self._client.fetch_messages_batch(chunk):
                try:
                    content = self._parser.parse(raw)
                except ParseError as e:
                    logger.warning("Skipping unparseable message: %s", e)
                    continue
                self._contents[content.message_id] = content

        return [self._contents[mid] for mid in message_ids if mid in self._contents]

    def mutate(self, message_id: str, op: MailOp) -> None:
        if op is MailOp.ARCHIVE:
            self._client.modify_labels(message_id, remove=[INBOX_LABEL, UNREAD_LABEL])
        elif op is MailOp.MARK_READ:
            self._client.modify_labels(message_id, remove=[UNREAD_LABEL])
        elif op is MailOp.TRASH:
            self._client.trash(message_id)
        else:
            raise ValueError(f"Unsupported mail operation: {op}")
        logger.info("Applied %s to %s", op.value, message_id)

    def send(self, message_id: str, body: str) -> None:
        original = self.fetch(message_id)
        raw = build_reply_raw(original, body)
        try:
            self._client.send_raw(raw, thread_id=original.thread_id or None)
        except RemoteError:
            logger.error("Sending reply to %s failed", message_id)
            raise
        logger.info("Sent reply to %s", message_id)


def build_reply_raw(original: MessageContent, body: str) -> str:
    """Build a base64url-encoded RFC 2822 reply to ``original``."""
    msg = EmailMessage()
    msg["To"] = original.sender
    msg["Subject"] = original.reply_subject()
    if original.message_id_header:
        msg["In-Reply-To"] = original.message_id_header
        msg["References"] = original.message_id_header
    msg.set_content(body)
    return base64.urlsafe_b64encode(msg.as_bytes()).decode("ascii")
