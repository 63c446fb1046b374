"""
Offline submission buffer.

Submissions captured on the device are stored locally first and delivered to
the bulk endpoint later by ``SubmissionSyncService``. Entries that the server
has not confirmed (pending / syncing / error) are never evicted; synced entries
are kept only briefly for recent-history display.
"""

import json
import secrets
import time
from enum import Enum
from typing import Callable, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from papertalk.client.storage import KeyValueStore, StorageQuotaExceeded
from papertalk.config import logger, SUBMISSION_BATCH_SIZE
from papertalk.models.submission import SubmissionCreate

STORAGE_KEY = "papertalk_pending_submissions"
STORAGE_VERSION = 1


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"


class PendingSubmission(BaseModel):
    """A submission waiting on the device for delivery to the server"""
    model_config = ConfigDict(extra="ignore")
    local_id: str
    student_name: str
    student_email: str
    image_urls: List[str]
    magic_link_token: str
    created_at: float  # epoch seconds
    sync_status: SyncStatus = SyncStatus.PENDING
    server_id: Optional[str] = None  # only when synced
    error_message: Optional[str] = None  # only when error
    sync_attempts: int = 0
    next_retry_at: Optional[float] = None

    def to_wire(self) -> dict:
        return SubmissionCreate(
            student_name=self.student_name,
            student_email=self.student_email,
            image_urls=self.image_urls,
            magic_link_token=self.magic_link_token,
        ).model_dump(by_alias=True)


def generate_local_id(now: float) -> str:
    return f"local_{int(now * 1000)}_{secrets.token_hex(3)}"


class SubmissionBatchManager:

    def __init__(
        self,
        store: KeyValueStore,
        batch_size: int = SUBMISSION_BATCH_SIZE,
        retention_seconds: float = 3600.0,
        synced_cap: int = 50,
        quota_synced_tail: int = 10,
        retry_delay: float = 1.0,
        storage_key: str = STORAGE_KEY,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.batch_size = batch_size
        self.retention_seconds = retention_seconds
        self.synced_cap = synced_cap
        self.quota_synced_tail = quota_synced_tail
        self.retry_delay = retry_delay
        self.storage_key = storage_key
        self.clock = clock

    # ---------- persistence ----------

    def _load(self) -> List[PendingSubmission]:
        raw = self.store.get(self.storage_key)
        if not raw:
            return []

        try:
            document = json.loads(raw)
            if document.get("version") != STORAGE_VERSION:
                logger.warning(f"Ignoring pending submissions stored with version {document.get('version')}")
                return []
            submissions = [PendingSubmission(**item) for item in document.get("submissions", [])]
        except (ValueError, AttributeError, TypeError, ValidationError) as e:
            logger.error(f"Error reading pending submissions: {e}", exc_info=True)
            return []

        active = self._collect_garbage(submissions)
        if len(active) != len(submissions):
            self._save(active)
        return active

    def _collect_garbage(self, submissions: List[PendingSubmission]) -> List[PendingSubmission]:
        """Drop synced entries past the retention window, then beyond the cap (oldest first)."""
        cutoff = self.clock() - self.retention_seconds
        synced = [
            s for s in submissions
            if s.sync_status == SyncStatus.SYNCED and s.created_at > cutoff
        ]
        synced.sort(key=lambda s: s.created_at)
        keep = {s.local_id for s in synced[-self.synced_cap:]} if self.synced_cap > 0 else set()
        return [
            s for s in submissions
            if s.sync_status != SyncStatus.SYNCED or s.local_id in keep
        ]

    def _dump(self, submissions: List[PendingSubmission]) -> str:
        return json.dumps({
            "version": STORAGE_VERSION,
            "submissions": [s.model_dump(mode="json") for s in submissions],
        })

    def _save(self, submissions: List[PendingSubmission]) -> None:
        try:
            self.store.set(self.storage_key, self._dump(submissions))
        except StorageQuotaExceeded:
            unsynced = [s for s in submissions if s.sync_status != SyncStatus.SYNCED]
            synced = sorted(
                (s for s in submissions if s.sync_status == SyncStatus.SYNCED),
                key=lambda s: s.created_at,
            )
            tail = synced[-self.quota_synced_tail:] if self.quota_synced_tail > 0 else []
            logger.warning(
                f"Local storage full, evicting {len(synced) - len(tail)} synced submissions"
            )
            # Still failing here means unsynced data alone does not fit; let it propagate
            self.store.set(self.storage_key, self._dump(unsynced + tail))

    def _update(self, local_ids: Iterable[str], apply: Callable[[PendingSubmission], None]) -> None:
        wanted = set(local_ids)
        submissions = self._load()
        for submission in submissions:
            if submission.local_id in wanted:
                apply(submission)
        self._save(submissions)

    # ---------- queries ----------

    def add_submission(self, data) -> PendingSubmission:
        """Buffer a submission locally. ``data`` is a SubmissionCreate or a dict in either casing."""
        if not isinstance(data, SubmissionCreate):
            data = SubmissionCreate.model_validate(data)
        now = self.clock()
        submission = PendingSubmission(
            local_id=generate_local_id(now),
            created_at=now,
            **data.model_dump(),
        )
        submissions = self._load()
        submissions.append(submission)
        self._save(submissions)
        logger.info(f"Buffered submission {submission.local_id} for {submission.student_email}")
        return submission

    def get_all(self) -> List[PendingSubmission]:
        return self._load()

    def get(self, local_id: str) -> Optional[PendingSubmission]:
        return next((s for s in self._load() if s.local_id == local_id), None)

    def get_pending_count(self) -> int:
        return sum(1 for s in self._load() if s.sync_status == SyncStatus.PENDING)

    def should_sync(self) -> bool:
        return self.get_pending_count() >= self.batch_size

    def get_submissions_for_sync(self, max_attempts: Optional[int] = None,
                                 ignore_backoff: bool = False) -> List[PendingSubmission]:
        """
        Pending items plus error items that may still be retried automatically,
        oldest first. An error item is retryable while its attempts are below
        ``max_attempts`` and its backoff has elapsed.
        """
        now = self.clock()
        eligible = []
        for s in self._load():
            if s.sync_status == SyncStatus.PENDING:
                eligible.append(s)
            elif s.sync_status == SyncStatus.ERROR:
                if max_attempts is not None and s.sync_attempts >= max_attempts:
                    continue
                if not ignore_backoff and s.next_retry_at is not None and s.next_retry_at > now:
                    continue
                eligible.append(s)
        eligible.sort(key=lambda s: s.created_at)
        return eligible

    # ---------- transitions ----------

    def mark_as_syncing(self, local_ids: List[str]) -> None:
        def apply(s: PendingSubmission):
            s.sync_status = SyncStatus.SYNCING

        self._update(local_ids, apply)

    def mark_as_synced(self, local_id: str, server_id: str) -> None:
        def apply(s: PendingSubmission):
            s.sync_status = SyncStatus.SYNCED
            s.server_id = server_id
            s.error_message = None
            s.next_retry_at = None

        self._update([local_id], apply)

    def mark_as_error(self, local_id: str, message: str) -> None:
        """Record a failed delivery attempt and back off exponentially before the next one."""
        now = self.clock()

        def apply(s: PendingSubmission):
            s.sync_status = SyncStatus.ERROR
            s.error_message = message
            s.sync_attempts += 1
            s.next_retry_at = now + self.retry_delay * (2 ** (s.sync_attempts - 1))

        self._update([local_id], apply)

    def requeue_failed(self, local_ids: Optional[List[str]] = None) -> int:
        """Manual intervention: put error items back to pending with a fresh attempt budget."""
        submissions = self._load()
        count = 0
        for s in submissions:
            if s.sync_status != SyncStatus.ERROR:
                continue
            if local_ids is not None and s.local_id not in local_ids:
                continue
            s.sync_status = SyncStatus.PENDING
            s.error_message = None
            s.sync_attempts = 0
            s.next_retry_at = None
            count += 1
        if count:
            self._save(submissions)
        return count

    def recover_interrupted(self) -> int:
        """Return items left ``syncing`` by a round that never finished (crash, reload) to pending."""
        submissions = self._load()
        stuck = [s for s in submissions if s.sync_status == SyncStatus.SYNCING]
        for s in stuck:
            s.sync_status = SyncStatus.PENDING
        if stuck:
            self._save(submissions)
            logger.info(f"Recovered {len(stuck)} submissions from an interrupted sync")
        return len(stuck)

    def remove_synced(self, keep_recent: bool = True) -> None:
        """
        Garbage-collect synced entries. By default the recent ones inside the
        retention window and cap are kept for display; ``keep_recent=False``
        drops every synced entry.
        """
        submissions = self._load()
        if keep_recent:
            active = self._collect_garbage(submissions)
        else:
            active = [s for s in submissions if s.sync_status != SyncStatus.SYNCED]
        if len(active) != len(submissions):
            self._save(active)

    def clear_all(self) -> None:
        self.store.delete(self.storage_key)
