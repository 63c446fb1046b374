"""
Submission ingestion - turns a client-asserted submission into a durable record
plus an AI grading job.

Rules shared by the single, bulk and teacher entry points:
- the magic link must exist and not be expired (``used`` never blocks reuse)
- one submission per (test, student email); teacher submissions overwrite it
- the record is stored before the job is queued, and queueing never fails the request
"""

import uuid
from typing import List, Optional

from pymongo.errors import DuplicateKeyError

from papertalk.config import logger
from papertalk.models.submission import (
    Exam, MagicLink, ProcessingStatus, Submission, SubmissionCreate, SubmissionStatus, SubmittedBy,
)
from papertalk.models.sync import BulkSubmissionRequest, BulkSubmissionResult
from papertalk.models.user import User
from papertalk.services.ai_queue import AIProcessingQueue, DROP_QUEUE_FULL
from papertalk.services.image_merge import ImageMerger
from papertalk.utils.serialization import utc_now_iso

DUPLICATE_SUBMISSION_ERROR = "You have already submitted this test"


class SubmissionRejected(Exception):
    """Business-rule failure with a message the submitter can act on."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class SubmissionIngestionService:

    def __init__(self, db, queue: AIProcessingQueue, merger: Optional[ImageMerger] = None):
        self.db = db
        self.queue = queue
        self.merger = merger

    async def ensure_indexes(self):
        await self.db.submissions.create_index("submission_id", unique=True)
        await self.db.submissions.create_index([("test_id", 1), ("student_email", 1)], unique=True)
        await self.db.magic_links.create_index("token", unique=True)

    # ============== VALIDATION ==============

    async def get_valid_magic_link(self, token: str) -> MagicLink:
        link_doc = await self.db.magic_links.find_one({"token": token}, {"_id": 0})
        if not link_doc:
            raise SubmissionRejected("Invalid magic link")
        magic_link = MagicLink(**link_doc)
        if magic_link.is_expired():
            raise SubmissionRejected("Magic link has expired")
        return magic_link

    async def _get_test(self, test_id: str, organization_id: Optional[str] = None) -> Exam:
        query = {"test_id": test_id}
        if organization_id:
            query["organization_id"] = organization_id
        test = await self.db.tests.find_one(query, {"_id": 0})
        if not test:
            raise SubmissionRejected("Test not found", status_code=404)
        return Exam(**test)

    # ============== ENTRY POINTS ==============

    async def create_submission(self, data: SubmissionCreate,
                                submitted_by: SubmittedBy = SubmittedBy.STUDENT) -> dict:
        """Accept a submission made through a magic link."""
        magic_link = await self.get_valid_magic_link(data.magic_link_token)
        test = await self._get_test(magic_link.test_id)

        result = await self._store_and_enqueue(
            test=test,
            student_name=data.student_name,
            student_email=data.student_email,
            image_urls=data.image_urls,
            submitted_by=submitted_by,
            magic_link_id=magic_link.magic_link_id,
        )

        if not magic_link.used:
            # Analytics only - the link stays usable
            await self.db.magic_links.update_one(
                {"magic_link_id": magic_link.magic_link_id},
                {"$set": {"used": True, "used_at": utc_now_iso()}}
            )
        return result

    async def create_teacher_submission(self, user: User, test_id: str, student_name: str,
                                        student_email: str, image_urls: List[str]) -> dict:
        """Teacher uploads on a student's behalf; replaces any earlier submission."""
        test = await self._get_test(test_id, organization_id=user.organization_id)
        return await self._store_and_enqueue(
            test=test,
            student_name=student_name,
            student_email=student_email,
            image_urls=image_urls,
            submitted_by=SubmittedBy.TEACHER,
        )

    async def create_bulk(self, request: BulkSubmissionRequest) -> List[BulkSubmissionResult]:
        """
        Ingest a batch item by item, in order, so earlier items are visible to later
        ones (duplicate detection). One item's failure never affects its siblings.
        """
        results = []
        for local_id, item in zip(request.local_ids, request.submissions):
            try:
                created = await self.create_submission(item)
                results.append(BulkSubmissionResult(local_id=local_id, success=True, server_id=created["id"]))
            except SubmissionRejected as e:
                results.append(BulkSubmissionResult(local_id=local_id, success=False, error=e.message))
            except Exception as e:
                logger.error(f"Error creating submission {local_id}: {e}", exc_info=True)
                results.append(BulkSubmissionResult(
                    local_id=local_id, success=False, error="Failed to create submission"
                ))

        accepted = sum(1 for r in results if r.success)
        logger.info(f"Bulk submission: {accepted}/{len(results)} accepted")
        return results

    async def retrigger(self, user: User, submission_id: str) -> dict:
        """Manual recovery when automatic queueing was lost or gave up."""
        submission = await self.db.submissions.find_one(
            {"submission_id": submission_id, "organization_id": user.organization_id},
            {"_id": 0}
        )
        if not submission:
            raise SubmissionRejected("Submission not found", status_code=404)

        if submission.get("status") == SubmissionStatus.GRADED.value:
            raise SubmissionRejected("Cannot retrigger AI grading for already graded submission")

        await self.db.submissions.update_one(
            {"submission_id": submission_id},
            {"$set": {
                "processing_status": ProcessingStatus.PROCESSING_AI.value,
                "processing_error": None,
                "updated_at": utc_now_iso(),
            }}
        )
        self.queue.add(submission_id, Submission(**submission).grading_refs())
        logger.info(f"AI grading retriggered for {submission_id} by {user.user_id}")
        return {"success": True, "submission_id": submission_id}

    async def handle_dropped_job(self, submission_id: str, reason: str) -> None:
        """AI queue hook: leave the submission in a state a teacher can retrigger from."""
        if reason == DROP_QUEUE_FULL:
            status = ProcessingStatus.PENDING
            message = "AI queue was full - retrigger grading"
        else:
            status = ProcessingStatus.FAILED
            message = "AI provider stayed overloaded - retrigger grading"

        await self.db.submissions.update_one(
            {"submission_id": submission_id},
            {"$set": {
                "processing_status": status.value,
                "processing_error": message,
                "updated_at": utc_now_iso(),
            }}
        )
        logger.warning(f"Submission {submission_id} not graded ({reason}); status set to {status.value}")

    # ============== PERSISTENCE ==============

    async def _store_and_enqueue(self, test: Exam, student_name: str, student_email: str,
                                 image_urls: List[str], submitted_by: SubmittedBy,
                                 magic_link_id: Optional[str] = None) -> dict:
        if not image_urls:
            raise SubmissionRejected("At least one page image is required")

        test_id = test.test_id
        existing = await self.db.submissions.find_one(
            {"test_id": test_id, "student_email": student_email},
            {"_id": 0, "submission_id": 1}
        )
        if existing and submitted_by != SubmittedBy.TEACHER:
            raise SubmissionRejected(DUPLICATE_SUBMISSION_ERROR, status_code=409)

        merged_image_url = None
        if self.merger is not None:
            merged_image_url = await self.merger.merge_images(image_urls, test_id, student_email)

        student = await self.db.users.find_one({"email": student_email}, {"_id": 0, "user_id": 1})
        now = utc_now_iso()
        fields = {
            "student_name": student_name,
            "image_urls": list(image_urls),
            "merged_image_url": merged_image_url,
            "status": SubmissionStatus.PENDING.value,
            "processing_status": ProcessingStatus.PROCESSING_AI.value,
            "processing_error": None,
            "submitted_by": submitted_by.value,
            "updated_at": now,
        }

        if existing:
            submission_id = existing["submission_id"]
            await self.db.submissions.update_one({"submission_id": submission_id}, {"$set": fields})
            logger.info(f"Teacher override replaced submission {submission_id} for {student_email}")
        else:
            submission_id = f"sub_{uuid.uuid4().hex[:12]}"
            doc = {
                "submission_id": submission_id,
                "organization_id": test.organization_id,
                "test_id": test_id,
                "student_email": student_email,
                "student_id": student["user_id"] if student else None,
                "magic_link_id": magic_link_id,
                "ai_feedback": None,
                "final_score": None,
                "created_at": now,
                **fields,
            }
            try:
                await self.db.submissions.insert_one(doc)
            except DuplicateKeyError:
                # Lost a race with a concurrent submission for the same pair
                raise SubmissionRejected(DUPLICATE_SUBMISSION_ERROR, status_code=409)

        refs = [merged_image_url] if merged_image_url else list(image_urls)
        self.queue.add(submission_id, refs)

        return {"id": submission_id, "updated": bool(existing)}
