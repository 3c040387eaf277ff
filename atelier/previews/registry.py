"""
Keyed Preview Task Registry

Tracks independent "generate a preview for key K" operations, at most
one in flight per key. Every request mints a token; a completion is
applied only while the live entry for its key still carries that
token, so results for reverted, cleared or replaced entries are
silently dropped.
"""

import asyncio
import itertools
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from atelier.core.config import settings
from atelier.core.exceptions import NotFoundError, ValidationError, friendly_error_message
from atelier.core.logging import get_logger, set_log_context
from atelier.core.metrics import previews_inflight_gauge, record_preview_result
from atelier.core.retry import call_with_retry
from atelier.inference.client import InferenceClient
from atelier.inference.schemas import PreviewPayload

logger = get_logger(__name__)


class PreviewStatus(str, Enum):
    """Individual preview status."""
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class PreviewEntry:
    """Point-in-time state of one key."""

    status: PreviewStatus
    token: int
    payload: PreviewPayload
    image_url: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"status": self.status.value}
        if self.status is PreviewStatus.SUCCESS:
            data["image_url"] = self.image_url
        elif self.status is PreviewStatus.ERROR:
            data["error"] = self.error
        return data


PreviewListener = Callable[[str, Optional[PreviewEntry]], None]


class PreviewRegistry:
    """
    Registry of concurrent preview-generation tasks keyed by an opaque id.

    Args:
        client: inference backend used for generate_preview
        max_concurrency: simultaneous remote calls allowed; None means
            PREVIEW_MAX_CONCURRENCY, 0 or less disables the limit
    """

    def __init__(self, client: InferenceClient, max_concurrency: Optional[int] = None):
        self.client = client
        self._entries: Dict[str, PreviewEntry] = {}
        self._tokens = itertools.count(1)
        self._tasks: Set[asyncio.Task] = set()
        self._listeners: List[PreviewListener] = []

        limit = settings.PREVIEW_MAX_CONCURRENCY if max_concurrency is None else max_concurrency
        self.max_concurrency = limit if limit > 0 else None
        self._semaphore = asyncio.Semaphore(limit) if limit > 0 else None

    # =========================================================================
    # Reads
    # =========================================================================

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Copy of {key: {status, image_url?, error?}}."""
        return {key: entry.to_dict() for key, entry in self._entries.items()}

    def get(self, key: str) -> Optional[PreviewEntry]:
        return self._entries.get(key)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def add_listener(self, listener: PreviewListener):
        """Call `listener(key, entry_or_None)` after every change to a key."""
        self._listeners.append(listener)

    # =========================================================================
    # Operations
    # =========================================================================

    def request(self, key: str, payload: Optional[PreviewPayload] = None) -> Optional[asyncio.Task]:
        """
        Start generating a preview for `key`.

        No-op (returns None) while the key is already loading. A finished
        entry is replaced and a new call started; without `payload` the
        previous entry's payload is reused.
        """
        current = self._entries.get(key)
        if current is not None and current.status is PreviewStatus.LOADING:
            logger.debug("preview_request_deduplicated", preview_key=key)
            return None

        if payload is None:
            if current is None:
                raise ValidationError(
                    f"A preview request for '{key}' needs a payload.",
                    details={"key": key}
                )
            payload = current.payload

        token = next(self._tokens)
        self._install(key, PreviewEntry(status=PreviewStatus.LOADING, token=token, payload=payload))
        logger.info("preview_requested", preview_key=key, token=token)

        task = asyncio.get_running_loop().create_task(
            self._run(key, token, payload), name=f"preview:{key}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def request_bulk(self, payloads: Mapping[str, PreviewPayload]) -> List[asyncio.Task]:
        """Request every key that has no entry or an errored one."""
        tasks = []
        for key, payload in payloads.items():
            current = self._entries.get(key)
            if current is not None and current.status is not PreviewStatus.ERROR:
                continue
            task = self.request(key, payload)
            if task is not None:
                tasks.append(task)
        logger.info("preview_bulk_requested", requested=len(payloads), launched=len(tasks))
        return tasks

    def retry(self, key: str) -> Optional[asyncio.Task]:
        """Re-run the request for an existing key with its stored payload."""
        if key not in self._entries:
            raise NotFoundError(f"No preview to retry for '{key}'", details={"key": key})
        return self.request(key)

    def revert(self, key: str) -> bool:
        """Remove `key`; a late result for it is dropped."""
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        logger.info("preview_reverted", preview_key=key, status=entry.status.value)
        self._notify(key, None)
        return True

    def clear_all(self) -> int:
        """Remove every entry; in-flight results are dropped on arrival."""
        keys = list(self._entries)
        self._entries.clear()
        for key in keys:
            self._notify(key, None)
        logger.info("previews_cleared", count=len(keys))
        return len(keys)

    async def join(self):
        """Wait until no preview task is running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # =========================================================================
    # Internals
    # =========================================================================

    def _is_live(self, key: str, token: int) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.token == token

    @asynccontextmanager
    async def _admission(self):
        if self._semaphore is None:
            yield
            return
        async with self._semaphore:
            yield

    async def _run(self, key: str, token: int, payload: PreviewPayload):
        set_log_context(preview_key=key)
        async with self._admission():
            if not self._is_live(key, token):
                # Reverted or replaced while queued for admission
                logger.info("preview_skipped_before_call", preview_key=key, token=token)
                record_preview_result("skipped")
                return

            previews_inflight_gauge.inc()
            try:
                image = await call_with_retry(
                    lambda: self.client.generate_preview(payload),
                    operation="generate_preview"
                )
            except Exception as e:
                logger.warning(
                    "preview_generation_failed",
                    preview_key=key,
                    error=str(e),
                    error_type=type(e).__name__
                )
                self._complete(key, token, PreviewEntry(
                    status=PreviewStatus.ERROR,
                    token=token,
                    payload=payload,
                    error=friendly_error_message(e, "Failed to generate preview")
                ))
                return
            finally:
                previews_inflight_gauge.dec()

        self._complete(key, token, PreviewEntry(
            status=PreviewStatus.SUCCESS,
            token=token,
            payload=payload,
            image_url=image.to_data_url()
        ))

    def _complete(self, key: str, token: int, entry: PreviewEntry):
        if not self._is_live(key, token):
            logger.info("preview_result_dropped", preview_key=key, token=token, status=entry.status.value)
            record_preview_result("stale")
            return
        record_preview_result(entry.status.value)
        self._install(key, entry)

    def _install(self, key: str, entry: PreviewEntry):
        self._entries[key] = entry
        self._notify(key, entry)

    def _notify(self, key: str, entry: Optional[PreviewEntry]):
        for listener in list(self._listeners):
            try:
                listener(key, entry)
            except Exception as e:
                logger.error("preview_listener_failed", preview_key=key, error=str(e))
