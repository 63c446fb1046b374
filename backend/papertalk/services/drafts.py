"""
AI draft generation - the AI queue's job handler.

Reads the submission and its test paper, calls the grading client, and writes the
draft feedback and score back. On failure the submission is put back into a
retryable state and the error is re-raised so the queue can classify it.
A submission the teacher has graded is final: AI writes never touch it.
"""

from typing import List, Optional

from papertalk.config import logger
from papertalk.models.grade import GradingResult
from papertalk.models.submission import ProcessingStatus, SubmissionStatus
from papertalk.services.grading import AIGradingClient, GradingServiceError
from papertalk.utils.serialization import utc_now_iso


OPEN_FOR_AI = {"status": {"$ne": SubmissionStatus.GRADED.value}}


class DraftService:

    def __init__(self, db, grading_client: AIGradingClient):
        self.db = db
        self.grading_client = grading_client

    async def generate_draft_internal(self, submission_id: str, image_refs: List[str],
                                      previous_feedback: Optional[str] = None) -> Optional[GradingResult]:
        """Grade a submission in the background (no auth). None if it was already graded."""
        submission = await self.db.submissions.find_one({"submission_id": submission_id}, {"_id": 0})
        if not submission:
            # Nothing to write back to, retrying will not help
            raise GradingServiceError(f"Submission {submission_id} not found", status_code=404)
        if submission.get("status") == SubmissionStatus.GRADED.value:
            logger.info(f"Submission {submission_id} is already graded. Skipping AI draft.")
            return None

        test = await self.db.tests.find_one(
            {"test_id": submission["test_id"]}, {"_id": 0, "test_paper_url": 1}
        )
        test_paper_url = (test or {}).get("test_paper_url")

        material_urls = ([test_paper_url] if test_paper_url else []) + list(image_refs)

        await self._set_status(submission_id, ProcessingStatus.PROCESSING_AI)
        try:
            result = await self.grading_client.grade(
                material_urls,
                student_name=submission.get("student_name") or "Student",
                has_question_paper=bool(test_paper_url),
                previous_feedback=previous_feedback,
            )
        except Exception as e:
            logger.error(f"Error generating draft for {submission_id}: {e}")
            await self._set_status(submission_id, ProcessingStatus.PENDING, error=str(e))
            raise

        written = await self.db.submissions.update_one(
            {"submission_id": submission_id, **OPEN_FOR_AI},
            {"$set": {
                "ai_feedback": result.feedback,
                "final_score": result.score,
                "processing_status": ProcessingStatus.READY.value,
                "processing_error": None,
                "updated_at": utc_now_iso(),
            }}
        )
        if written.matched_count == 0:
            logger.warning(f"Submission {submission_id} was graded while the AI ran. Discarding the draft.")
            return None
        logger.info(f"✅ AI draft ready for submission {submission_id} (score: {result.score})")
        return result

    async def _set_status(self, submission_id: str, status: ProcessingStatus, error: Optional[str] = None):
        update = {"processing_status": status.value, "updated_at": utc_now_iso()}
        if error is not None:
            update["processing_error"] = error
        try:
            await self.db.submissions.update_one(
                {"submission_id": submission_id, **OPEN_FOR_AI}, {"$set": update}
            )
        except Exception as e:
            logger.error(f"Failed to set {submission_id} to {status.value}: {e}")
