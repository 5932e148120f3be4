# sheet_sync.py
"""
Push work records and receipts to a Google Apps Script web app backing a spreadsheet.

Sync is best-effort: every operation returns a SyncResult instead of raising, and
``schedule()`` runs a sync in the background so callers never wait on it.
"""
import asyncio
import os
import re
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, List, Optional, Sequence, Set

import httpx
from dotenv import load_dotenv
from pydantic import BaseModel
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from chronos_ai.middleware import get_logger
from chronos_ai.schemas import ReceiptRecord, WorkRecord

load_dotenv()

SHEET_SYNC_MAX_RETRIES = int(os.getenv("SHEET_SYNC_MAX_RETRIES", 3))
SHEET_SYNC_RETRY_DELAY_SECONDS = float(os.getenv("SHEET_SYNC_RETRY_DELAY_SECONDS", 1.0))
SHEET_SYNC_TIMEOUT_SECONDS = float(os.getenv("SHEET_SYNC_TIMEOUT_SECONDS", 10))
BATCH_SIZE = 50

GOOGLE_SCRIPT_URL_PATTERN = re.compile(r'^https://script\.google\.com/macros/s/[a-zA-Z0-9_-]+/exec$')
INVALID_URL_MESSAGE = "Invalid Google Script URL"


def validate_url(url: Optional[str]) -> bool:
    """True when ``url`` is a deployed Apps Script web app URL."""
    return bool(url) and GOOGLE_SCRIPT_URL_PATTERN.match(url) is not None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SyncResult(BaseModel):
    success: bool
    message: str
    timestamp: Optional[str] = None


def _record_payload(record: Any) -> Dict[str, Any]:
    if isinstance(record, BaseModel):
        return record.model_dump(by_alias=True, exclude_none=True, mode="json")
    return dict(record)


class SheetSyncService:
    def __init__(self, http_client: Optional[httpx.AsyncClient] = None,
                 max_retries: int = SHEET_SYNC_MAX_RETRIES,
                 retry_delay_seconds: float = SHEET_SYNC_RETRY_DELAY_SECONDS,
                 timeout: float = SHEET_SYNC_TIMEOUT_SECONDS):
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds
        self._tasks: Set[asyncio.Task] = set()

    async def aclose(self):
        if self._owns_client:
            await self.client.aclose()

    async def _post(self, url: str, payload: Dict[str, Any]) -> httpx.Response:
        logger = get_logger()
        # only transport failures are retried; an HTTP error status fails immediately
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_fixed(self.retry_delay_seconds),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(f"Retrying sheet sync (attempt {attempt.retry_state.attempt_number})")
                response = await self.client.post(url, json=payload)
                response.raise_for_status()
                return response

    async def _send(self, url: str, payload: Dict[str, Any], success_message: str,
                    failure_prefix: str = "") -> SyncResult:
        logger = get_logger()
        try:
            await self._post(url, payload)
        except httpx.HTTPStatusError as e:
            logger.warning(f"Sheet sync rejected with status {e.response.status_code}")
            return SyncResult(success=False, message=f"{failure_prefix}HTTP {e.response.status_code}")
        except httpx.HTTPError as e:
            logger.warning(f"Sheet sync failed: {type(e).__name__}")
            return SyncResult(success=False, message=f"{failure_prefix}{type(e).__name__}")
        return SyncResult(success=True, message=success_message, timestamp=_now())

    # --- Operations ---

    async def test_connection(self, url: str, client_name: Optional[str] = None) -> SyncResult:
        if not validate_url(url):
            return SyncResult(
                success=False,
                message="Invalid URL format. Must be https://script.google.com/macros/s/.../exec",
            )
        payload = {"syncType": "test", "clientName": client_name or "Test Client", "timestamp": _now()}
        return await self._send(
            url, payload,
            "Request sent successfully. Check your Google Sheet for confirmation.",
            failure_prefix="Connection failed: ",
        )

    async def sync_record(self, record: WorkRecord, url: str, app_link: str = "") -> SyncResult:
        if not validate_url(url):
            return SyncResult(success=False, message=INVALID_URL_MESSAGE)
        payload = _record_payload(record)
        payload.update({"syncType": "work", "appLink": app_link, "syncedAt": _now()})
        return await self._send(url, payload, "Record synced")

    async def sync_receipt(self, receipt: ReceiptRecord, url: str) -> SyncResult:
        if not validate_url(url):
            return SyncResult(success=False, message=INVALID_URL_MESSAGE)
        payload = _record_payload(receipt)
        # data URLs of receipt photos are too large for a sheet cell
        payload.pop("imageUrl", None)
        payload.update({"syncType": "receipt", "syncedAt": _now()})
        return await self._send(url, payload, "Receipt synced")

    async def sync_batch(self, records: Sequence[WorkRecord], url: str, app_link: str = "") -> SyncResult:
        if not validate_url(url):
            return SyncResult(success=False, message=INVALID_URL_MESSAGE)
        if not records:
            return SyncResult(success=True, message="No records to sync")

        batches: List[List[Dict[str, Any]]] = []
        for start in range(0, len(records), BATCH_SIZE):
            batches.append([
                {**_record_payload(record), "appLink": app_link}
                for record in records[start:start + BATCH_SIZE]
            ])

        for index, batch in enumerate(batches, start=1):
            result = await self._send(url, {"syncType": "batch", "records": batch}, "")
            if not result.success:
                return SyncResult(success=False, message=f"Batch {index} of {len(batches)} failed: {result.message}")

        return SyncResult(
            success=True,
            message=f"{len(records)} records synced in {len(batches)} batch(es)",
            timestamp=_now(),
        )

    # --- Background ---

    def schedule(self, sync: Awaitable[SyncResult]) -> asyncio.Task:
        """Run ``sync`` as a background task; its outcome is only logged."""
        task = asyncio.ensure_future(sync)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        logger = get_logger()
        if task.cancelled():
            logger.info("Background sheet sync cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background sheet sync crashed: {type(error).__name__}")
            return
        result = task.result()
        if result.success:
            logger.info(f"Background sheet sync: {result.message}")
        else:
            logger.warning(f"Background sheet sync failed: {result.message}")

    async def drain(self):
        """Wait for every scheduled sync to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
