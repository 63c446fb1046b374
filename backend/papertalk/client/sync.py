"""
Submission sync service - delivers buffered submissions to the bulk endpoint.

One round at a time: every trigger (interval timer, reconnect, tab visible,
manual sync, new submission) goes through ``sync_pending``, which returns
immediately if a round is already running.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx
from pydantic import ValidationError

from papertalk.client.batch import PendingSubmission, SubmissionBatchManager, SyncStatus
from papertalk.config import logger, SYNC_INTERVAL_SECONDS
from papertalk.models.sync import BulkSubmissionResult
from papertalk.services.background import BackgroundTaskRunner

BULK_ENDPOINT = "/api/submissions/bulk"


@dataclass
class SyncRoundResult:
    attempted: List[str]
    synced: Dict[str, str] = field(default_factory=dict)  # local_id -> server_id
    failed: Dict[str, str] = field(default_factory=dict)  # local_id -> error
    transport_error: Optional[str] = None


def describe_sync_failure(error: Exception) -> str:
    if isinstance(error, httpx.HTTPStatusError):
        response = error.response
        try:
            detail = response.json().get("detail")
        except (ValueError, AttributeError):
            detail = None
        return detail if isinstance(detail, str) and detail else (response.text or "Failed to sync submissions")
    if isinstance(error, httpx.TimeoutException):
        return "Sync timed out"
    if isinstance(error, httpx.HTTPError):
        return f"Network error: {error}"
    return f"Invalid response from server: {error}"


class SubmissionSyncService:

    def __init__(
        self,
        batch_manager: SubmissionBatchManager,
        http_client: httpx.AsyncClient,
        bulk_url: str = BULK_ENDPOINT,
        max_retries: int = 3,
        sync_interval: float = SYNC_INTERVAL_SECONDS,
        runner: Optional[BackgroundTaskRunner] = None,
    ):
        self.batch_manager = batch_manager
        self.http_client = http_client
        self.bulk_url = bulk_url
        self.max_retries = max_retries
        self.sync_interval = sync_interval
        self.runner = runner or BackgroundTaskRunner()
        self._syncing = False
        self._periodic_task: Optional[asyncio.Task] = None

    @property
    def batch_size(self) -> int:
        return self.batch_manager.batch_size

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    # ---------- triggers ----------

    async def submit(self, data) -> PendingSubmission:
        """Buffer a submission and sync right away if a full batch is waiting."""
        submission = self.batch_manager.add_submission(data)
        if self.batch_manager.should_sync():
            await self.sync_pending()
        return submission

    async def force_sync(self) -> Optional[SyncRoundResult]:
        """Manual sync: ignores the batch-size gate and retry backoff."""
        return await self.sync_pending(force=True)

    def notify_online(self) -> asyncio.Task:
        return self.runner.spawn(self.sync_pending(), name="sync-online")

    def notify_visible(self) -> asyncio.Task:
        return self.runner.spawn(self.sync_pending(), name="sync-visible")

    def start(self) -> None:
        """Initial sync now, then one attempt every ``sync_interval`` seconds."""
        if self._periodic_task is not None and not self._periodic_task.done():
            return
        self.batch_manager.recover_interrupted()
        self._periodic_task = self.runner.spawn(self._periodic_sync(), name="sync-periodic")

    async def stop(self) -> None:
        if self._periodic_task is not None:
            self._periodic_task.cancel()
            try:
                await self._periodic_task
            except asyncio.CancelledError:
                pass
            self._periodic_task = None

    async def _periodic_sync(self):
        while True:
            try:
                await self.sync_pending()
            except Exception as e:
                # Local storage failures must not kill the timer
                logger.error(f"Periodic sync failed: {e}", exc_info=True)
            await asyncio.sleep(self.sync_interval)

    # ---------- rounds ----------

    async def sync_pending(self, force: bool = False) -> Optional[SyncRoundResult]:
        """Run one sync round. Returns None when nothing was sent."""
        if self._syncing:
            logger.debug("Sync already in progress, skipping")
            return None

        self._syncing = True
        try:
            return await self._run_round(force)
        finally:
            self._syncing = False

    async def _run_round(self, force: bool) -> Optional[SyncRoundResult]:
        eligible = self.batch_manager.get_submissions_for_sync(
            max_attempts=self.max_retries, ignore_backoff=force
        )
        if not eligible:
            return None

        if not force:
            pending_count = sum(1 for s in eligible if s.sync_status == SyncStatus.PENDING)
            has_errors = any(s.sync_status == SyncStatus.ERROR for s in eligible)
            if pending_count < self.batch_size and not has_errors:
                # Wait for more submissions
                return None

        batch = eligible[:self.batch_size]
        local_ids = [s.local_id for s in batch]
        self.batch_manager.mark_as_syncing(local_ids)
        result = SyncRoundResult(attempted=local_ids)

        try:
            response = await self.http_client.post(self.bulk_url, json={
                "submissions": [s.to_wire() for s in batch],
                "localIds": local_ids,
            })
            response.raise_for_status()
            payload = response.json()
            if not isinstance(payload, list):
                raise ValueError("expected a list of results")
            results = [BulkSubmissionResult.model_validate(item) for item in payload]
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            message = describe_sync_failure(e)
            logger.warning(f"Sync of {len(local_ids)} submissions failed: {message}")
            for local_id in local_ids:
                self.batch_manager.mark_as_error(local_id, message)
                result.failed[local_id] = message
            result.transport_error = message
            return result

        by_local_id = {r.local_id: r for r in results}
        for local_id in local_ids:
            item = by_local_id.get(local_id)
            if item is None:
                message = "Missing from server response"
            elif item.success and item.server_id:
                self.batch_manager.mark_as_synced(local_id, item.server_id)
                result.synced[local_id] = item.server_id
                continue
            else:
                message = item.error or "Sync failed"
            self.batch_manager.mark_as_error(local_id, message)
            result.failed[local_id] = message

        if result.synced:
            self.batch_manager.remove_synced()

        logger.info(f"Sync round: {len(result.synced)}/{len(local_ids)} submissions delivered")
        return result
