"""Upload-once cache for documents referenced by several phases.

Phases 1 and 3 attach every document to their prompt. Uploading to the
Gemini Files API once and reusing the returned URI avoids resending bytes
on each call.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from menu_extraction.core.exceptions import UploadError
from menu_extraction.core.gemini_client import GeminiClient
from menu_extraction.models.menu_models import CachedUpload, DocumentKind, PreparedDocument
from menu_extraction.utils.logging import get_logger

LOGGER = get_logger(__name__)


def upload_payload(doc: PreparedDocument) -> tuple[bytes, str]:
    """Return the bytes and MIME type to upload for a prepared document.

    Spreadsheets are uploaded as CSV text because the Files API does not
    accept workbook formats.
    """
    if doc.kind == DocumentKind.SPREADSHEET:
        blocks = [f"=== Sheet: {sheet.name} ===\n{sheet.content}" for sheet in doc.sheets or []]
        return "\n\n".join(blocks).encode("utf-8"), "text/csv"
    if not doc.raw_bytes:
        raise UploadError(f"No content available to upload for document {doc.id}")
    return doc.raw_bytes, doc.mime_type


class ContentUploadCache:
    """Memoizes uploads by document id for the lifetime of a run.

    Concurrent requests for the same document share a single in-flight
    upload. Failed uploads are not memoized, so a later call may retry.
    """

    def __init__(
        self,
        client: GeminiClient,
        concurrency: int = 3,
        wave_pause_seconds: float = 0.5,
        ttl_seconds: float = 0.0,
    ):
        self.client = client
        self.concurrency = max(1, concurrency)
        self.wave_pause_seconds = wave_pause_seconds
        self.ttl = timedelta(seconds=ttl_seconds) if ttl_seconds > 0 else None
        self._entries: Dict[str, CachedUpload] = {}
        self._in_flight: Dict[str, asyncio.Task] = {}
        self.hits = 0
        self.misses = 0

    def get(self, document_id: str) -> Optional[CachedUpload]:
        entry = self._entries.get(document_id)
        if entry is None:
            return None
        if self._is_expired(entry):
            del self._entries[document_id]
            return None
        return entry

    def all(self) -> Dict[str, CachedUpload]:
        return {doc_id: entry for doc_id, entry in self._entries.items() if not self._is_expired(entry)}

    async def get_or_upload(self, doc: PreparedDocument) -> CachedUpload:
        """Return the cached upload for ``doc``, uploading it if needed.

        Raises:
            UploadError: If the upload fails
        """
        cached = self.get(doc.id)
        if cached is not None:
            self.hits += 1
            return cached

        task = self._in_flight.get(doc.id)
        if task is None:
            self.misses += 1
            task = asyncio.ensure_future(self._upload(doc))
            self._in_flight[doc.id] = task
            task.add_done_callback(lambda done, doc_id=doc.id: self._forget(doc_id, done))
        else:
            LOGGER.debug(f"Waiting for in-progress upload of {doc.id}")

        return await asyncio.shield(task)

    async def upload_all(self, documents: List[PreparedDocument]) -> Dict[str, CachedUpload]:
        """Upload documents in waves of ``concurrency`` with a pause between waves.

        A failed upload is logged and the document is left out of the result.
        """
        results: Dict[str, CachedUpload] = {}
        for start in range(0, len(documents), self.concurrency):
            wave = documents[start:start + self.concurrency]
            outcomes = await asyncio.gather(
                *(self.get_or_upload(doc) for doc in wave),
                return_exceptions=True,
            )
            for doc, outcome in zip(wave, outcomes):
                if isinstance(outcome, BaseException):
                    LOGGER.warning(f"Upload failed for {doc.name} ({doc.id}): {outcome}")
                else:
                    results[doc.id] = outcome

            if start + self.concurrency < len(documents) and self.wave_pause_seconds > 0:
                await asyncio.sleep(self.wave_pause_seconds)

        LOGGER.info(f"Uploaded {len(results)}/{len(documents)} documents ({self.hits} cache hits)")
        return results

    def evict_expired(self) -> int:
        expired = [doc_id for doc_id, entry in self._entries.items() if self._is_expired(entry)]
        for doc_id in expired:
            del self._entries[doc_id]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    @property
    def pending_uploads(self) -> int:
        return len(self._in_flight)

    async def close(self) -> None:
        """Cancel uploads still in flight and wait for them to finish.

        Callers that time out leave their shielded uploads running; the run
        calls this on teardown.
        """
        pending = list(self._in_flight.values())
        if not pending:
            return
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._in_flight.clear()
        LOGGER.info(f"Cancelled {len(pending)} pending uploads")

    def _forget(self, doc_id: str, task: asyncio.Task) -> None:
        self._in_flight.pop(doc_id, None)
        # Marks the exception retrieved when no caller is left awaiting the task
        if not task.cancelled() and task.exception() is not None:
            LOGGER.debug(f"Upload of {doc_id} failed: {task.exception()}")

    async def _upload(self, doc: PreparedDocument) -> CachedUpload:
        data, mime_type = upload_payload(doc)
        uploaded = await self.client.upload(data, mime_type, display_name=doc.name)
        entry = CachedUpload(
            document_id=doc.id,
            remote_uri=uploaded.uri,
            mime_type=uploaded.mime_type,
            uploaded_at=datetime.now(timezone.utc),
        )
        self._entries[doc.id] = entry
        LOGGER.info(f"Uploaded {doc.name} -> {entry.remote_uri}")
        return entry

    def _is_expired(self, entry: CachedUpload) -> bool:
        if self.ttl is None:
            return False
        return datetime.now(timezone.utc) - entry.uploaded_at > self.ttl
