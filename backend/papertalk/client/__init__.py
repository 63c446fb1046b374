"""Device-side offline buffering and bulk sync of student submissions"""

from .storage import KeyValueStore, MemoryKeyValueStore, JsonFileKeyValueStore, StorageQuotaExceeded
from .batch import PendingSubmission, SubmissionBatchManager, SyncStatus
from .sync import SubmissionSyncService, SyncRoundResult
