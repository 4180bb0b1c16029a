"""Gmail API client for message discovery, batch fetching, label mutation and send."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Generator
from typing import Any

from googleapiclient.discovery import Resource
from googleapiclient.errors import HttpError
from googleapiclient.http import BatchHttpRequest

from clinbox.core.exceptions import RateLimitError, RemoteError
from clinbox.core.models import MessageRef

logger = logging.getLogger(__name__)

# Mutations are not retried silently more than once.
MUTATION_MAX_RETRIES = 1


def _is_rate_limit_error(exc: Exception) -> bool:
    """Check whether an exception represents a Gmail API 429 rate limit."""
    if isinstance(exc, HttpError) and exc.status_code == 429:
        return True
    error_str = str(exc)
    return "429" in error_str or "rateLimitExceeded" in error_str


class GmailClient:
    """Thin wrapper around Gmail API for discovery, batch fetch, modify, trash and send."""

    def __init__(
        self,
        service: Resource,
        user_id: str = "me",
        *,
        max_retries: int = 5,
        initial_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 60.0,
        inter_page_delay_seconds: float = 0.2,
        num_retries: int = 3,
    ) -> None:
        self._service = service
        self._user_id = user_id
        self._max_retries = max_retries
        self._initial_backoff = initial_backoff_seconds
        self._max_backoff = max_backoff_seconds
        self._inter_page_delay = inter_page_delay_seconds
        self._num_retries = num_retries

    def _execute_with_retry(
        self,
        request: Any,
        context: str,
        *,
        max_retries: int | None = None,
        num_retries: int | None = None,
    ) -> Any:
        """Execute a single API request with exponential backoff on 429 errors.

        Args:
            request: A googleapiclient HttpRequest object.
            context: Description for log messages (e.g. "archive message").
            max_retries: Override for the number of 429 retries.
            num_retries: Override for googleapiclient's own transport retries.

        Returns:
            The API response dict.

        Raises:
            RateLimitError: When retries are exhausted on 429 errors.
            RemoteError: On non-rate-limit API errors.
        """
        retries = self._max_retries if max_retries is None else max_retries
        transport_retries = self._num_retries if num_retries is None else num_retries
        backoff = self._initial_backoff

        for attempt in range(retries + 1):
            try:
                return request.execute(num_retries=transport_retries)
            except Exception as e:
                if _is_rate_limit_error(e):
                    if attempt >= retries:
                        raise RateLimitError(
                            f"Rate limited during {context} after {retries} retries: {e}"
                        ) from e
                    sleep_time = min(backoff, self._max_backoff)
                    jitter = random.uniform(0, sleep_time)
                    logger.warning(
                        "Rate limited during %s (attempt %d/%d), "
                        "sleeping %.2fs (backoff=%.2f + jitter=%.2f)",
                        context, attempt + 1, retries,
                        jitter, backoff, jitter,
                    )
                    time.sleep(jitter)
                    backoff = min(backoff * 2, self._max_backoff)
                else:
                    raise RemoteError(f"Failed to {context}: {e}") from e

        raise RateLimitError(f"Rate limited during {context} after {retries} retries")

    def discover_message_ids(
        self,
        label_ids: list[str],
        max_results_per_page: int = 100,
        query: str | None = None,
    ) -> Generator[list[MessageRef], None, None]:
        """Paginate through message IDs, yielding pages of MessageRef.

        Positions are left at 0; the caller numbers references once it has
        applied its own limit.

        Args:
            label_ids: Gmail label IDs to filter by.
            max_results_per_page: Number of messages per page (1-500).
            query: Optional Gmail search query to further filter.

        Yields:
            Lists of MessageRef objects, one list per API page.
        """
        page_token: str | None = None
        first_page = True

        while True:
            if not first_page and self._inter_page_delay > 0:
                time.sleep(self._inter_page_delay)
            first_page = False

            kwargs: dict[str, Any] = {
                "userId": self._user_id,
                "labelIds": label_ids,
                "maxResults": max_results_per_page,
            }
            if page_token:
                kwargs["pageToken"] = page_token
            if query:
                kwargs["q"] = query

            request = self._service.users().messages().list(**kwargs)
            response = self._execute_with_retry(request, "list messages")

            messages = response.get("messages", [])
            if not messages:
                return

            refs = [
                MessageRef(message_id=msg["id"], thread_id=msg.get("threadId", ""))
                for msg in messages
            ]
            logger.debug("Discovered %d message IDs (page)", len(refs))
            yield refs

            page_token = response.get("nextPageToken")
            if not page_token:
                return

    def get_message(self, message_id: str) -> dict[str, Any]:
        """Fetch one full message."""
        request = (
            self._service.users()
            .messages()
            .get(userId=self._user_id, id=message_id, format="full")
        )
        return self._execute_with_retry(request, f"fetch message {message_id}")

    def fetch_messages_batch(self, message_ids: list[str]) -> list[dict[str, Any]]:
        """Fetch full message bodies in a single batch request.

        Args:
            message_ids: List of Gmail message IDs to fetch.

        Returns:
            List of raw Gmail API message dicts.
        """
        backoff = self._initial_backoff

        for attempt in range(self._max_retries + 1):
            results: list[dict[str, Any]] = []
            errors: list[str] = []
            rate_limited = False

            def _callback(
                request_id: str,
                response: dict[str, Any] | None,
                exception: Exception | None,
            ) -> None:
                nonlocal rate_limited
                if exception:
                    if _is_rate_limit_error(exception):
                        rate_limited = True
                        errors.append(f"Rate limited for {request_id}: {exception}")
                    else:
                        logger.warning("Batch fetch error for %s: %s", request_id, exception)
                        errors.append(f"Error for {request_id}: {exception}")
                elif response:
                    results.append(response)

            batch: BatchHttpRequest = self._service.new_batch_http_request(callback=_callback)

            for msg_id in message_ids:
                batch.add(
                    self._service.users()
                    .messages()
                    .get(
                        userId=self._user_id,
                        id=msg_id,
                        format="full",
                    )
                )

            try:
                batch.execute()
            except Exception as e:
                if _is_rate_limit_error(e):
                    rate_limited = True
                else:
                    raise RemoteError(f"Batch request failed: {e}") from e

            if rate_limited:
                if attempt >= self._max_retries:
                    raise RateLimitError(
                        f"Rate limited during batch fetch after {self._max_retries} retries"
                    )
                sleep_time = min(backoff, self._max_backoff)
                jitter = random.uniform(0, sleep_time)
                logger.warning(
                    "Rate limited during batch fetch (attempt %d/%d), sleeping %.2fs",
                    attempt + 1, self._max_retries, jitter,
                )
                time.sleep(jitter)
                backoff = min(backoff * 2, self._max_backoff)
                continue

            if errors:
                logger.warning(
                    "Batch had %d errors out of %d requests",
                    len(errors), len(message_ids),
                )

            logger.debug("Batch fetched %d messages", len(results))
            return results

        raise RateLimitError(
            f"Rate limited during batch fetch after {self._max_retries} retries"
        )

    def modify_labels(
        self,
        message_id: str,
        *,
        remove: list[str] | None = None,
        add: list[str] | None = None,
    ) -> None:
        """Add/remove labels on one message in a single call."""
        body: dict[str, list[str]] = {}
        if remove:
            body["removeLabelIds"] = remove
        if add:
            body["addLabelIds"] = add
        request = (
            self._service.users()
            .messages()
            .modify(userId=self._user_id, id=message_id, body=body)
        )
        self._execute_with_retry(
            request,
            f"modify labels of {message_id}",
            max_retries=MUTATION_MAX_RETRIES,
            num_retries=0,
        )

    def trash(self, message_id: str) -> None:
        """Move one message to the trash."""
        request = self._service.users().messages().trash(userId=self._user_id, id=message_id)
        self._execute_with_retry(
            request,
            f"trash message {message_id}",
            max_retries=MUTATION_MAX_RETRIES,
            num_retries=0,
        )

    def send_raw(self, raw: str, thread_id: str | None = None) -> dict[str, Any]:
        """Send a base64url-encoded RFC 2822 message, optionally within a thread."""
        body: dict[str, str] = {"raw": raw}
        if thread_id:
            body["threadId"] = thread_id
        request = self._service.users().messages().send(userId=self._user_id, body=body)
        return self._execute_with_retry(
            request,
            "send reply",
            max_retries=MUTATION_MAX_RETRIES,
            num_retries=0,
        )
