"""Grading routes - grade breakdown, mark overrides, finalize, AI queue status."""

from fastapi import APIRouter, Depends, HTTPException

from papertalk.config import logger
from papertalk.deps import get_services, get_grader_user
from papertalk.models.grade import MarksUpdateRequest
from papertalk.models.submission import FinalizeGradeRequest
from papertalk.models.user import User
from papertalk.services import Services
from papertalk.services.grade_parser import parse_grade_feedback, reconstruct_feedback
from papertalk.services.grading import extract_score
from papertalk.services.ingestion import SubmissionRejected
from papertalk.utils.serialization import utc_now_iso

router = APIRouter(tags=["grading"])


async def _get_graded_draft(services: Services, user: User, submission_id: str) -> dict:
    submission = await services.db.submissions.find_one(
        {"submission_id": submission_id, "organization_id": user.organization_id},
        {"_id": 0}
    )
    if not submission:
        raise HTTPException(status_code=404, detail="Submission not found")
    if not submission.get("ai_feedback"):
        raise HTTPException(status_code=400, detail="No feedback to break down yet")
    return submission


def _feedback_with_score(submission: dict) -> str:
    # Stored feedback has the SCORE line stripped; put it back for parsing
    feedback = submission["ai_feedback"]
    if submission.get("final_score") is not None:
        feedback = f"{feedback}\n\nSCORE: {submission['final_score']}"
    return feedback


@router.get("/submissions/{submission_id}/breakdown")
async def get_grade_breakdown(
    submission_id: str,
    user: User = Depends(get_grader_user),
    services: Services = Depends(get_services),
):
    """Per-section, per-question marks parsed from the feedback"""
    submission = await _get_graded_draft(services, user, submission_id)
    return parse_grade_feedback(_feedback_with_score(submission)).model_dump()


@router.post("/submissions/{submission_id}/marks")
async def update_marks(
    submission_id: str,
    data: MarksUpdateRequest,
    user: User = Depends(get_grader_user),
    services: Services = Depends(get_services),
):
    """Apply teacher mark overrides and rebuild the feedback text and score"""
    submission = await _get_graded_draft(services, user, submission_id)
    parsed = parse_grade_feedback(_feedback_with_score(submission))
    feedback, score = extract_score(reconstruct_feedback(parsed, data.updated_marks))

    await services.db.submissions.update_one(
        {"submission_id": submission_id},
        {"$set": {"ai_feedback": feedback, "final_score": score, "updated_at": utc_now_iso()}}
    )
    logger.info(f"Marks updated for {submission_id} by {user.user_id}: {data.updated_marks}")
    return {"success": True, "feedback": feedback, "score": score}


@router.post("/submissions/{submission_id}/finalize")
async def finalize_grade(
    submission_id: str,
    data: FinalizeGradeRequest,
    user: User = Depends(get_grader_user),
    services: Services = Depends(get_services),
):
    """Save the teacher's final grade; audio feedback is generated in the background"""
    try:
        return await services.finalizer.finalize_grade(
            user, submission_id, data.final_feedback, data.final_score, voice_id=data.voice_id
        )
    except SubmissionRejected as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get("/ai-queue/status")
async def get_ai_queue_status(
    user: User = Depends(get_grader_user),
    services: Services = Depends(get_services),
):
    return services.queue.snapshot()
