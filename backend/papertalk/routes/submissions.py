"""Submission routes - magic-link submit, bulk sync, teacher upload, retrigger, reads."""

from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import ValidationError

from papertalk.config import logger
from papertalk.deps import get_services, get_current_user, get_grader_user
from papertalk.models.submission import Submission, SubmissionCreate, SubmissionStatus, TeacherSubmissionCreate
from papertalk.models.sync import BulkSubmissionRequest
from papertalk.models.user import User
from papertalk.services import Services
from papertalk.services.ai_queue import JobAlreadyTracked
from papertalk.services.grading import GradingServiceError
from papertalk.services.ingestion import SubmissionRejected
from papertalk.utils.serialization import serialize_doc

router = APIRouter(tags=["submissions"])


@router.post("/submissions")
async def create_submission(data: SubmissionCreate, services: Services = Depends(get_services)):
    """Student submission through a magic link"""
    try:
        created = await services.ingestion.create_submission(data)
    except SubmissionRejected as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {"success": True, "id": created["id"]}


@router.post("/submissions/bulk")
async def create_bulk_submissions(payload: dict = Body(...), services: Services = Depends(get_services)):
    """
    Offline sync endpoint. Structural problems reject the whole request (400);
    business-rule problems are reported per item with 200.
    """
    try:
        request = BulkSubmissionRequest.model_validate(payload)
    except ValidationError as e:
        messages = [err["msg"].removeprefix("Value error, ") for err in e.errors()]
        raise HTTPException(status_code=400, detail=f"Invalid request: {'; '.join(messages)}")

    results = await services.ingestion.create_bulk(request)
    return [r.to_wire() for r in results]


@router.post("/tests/{test_id}/teacher-submissions")
async def create_teacher_submission(
    test_id: str,
    data: TeacherSubmissionCreate,
    user: User = Depends(get_grader_user),
    services: Services = Depends(get_services),
):
    """Teacher uploads a paper for a student, replacing any earlier submission"""
    try:
        created = await services.ingestion.create_teacher_submission(
            user, test_id, data.student_name, data.student_email, data.image_urls
        )
    except SubmissionRejected as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {"success": True, "id": created["id"], "updated": created["updated"]}


@router.post("/submissions/{submission_id}/retrigger")
async def retrigger_ai_grading(
    submission_id: str,
    user: User = Depends(get_grader_user),
    services: Services = Depends(get_services),
):
    try:
        return await services.ingestion.retrigger(user, submission_id)
    except SubmissionRejected as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/submissions/{submission_id}/regenerate")
async def regenerate_draft(
    submission_id: str,
    user: User = Depends(get_grader_user),
    services: Services = Depends(get_services),
):
    """Regrade now, using the previous AI feedback as context"""
    submission = await services.db.submissions.find_one(
        {"submission_id": submission_id, "organization_id": user.organization_id},
        {"_id": 0}
    )
    if not submission:
        raise HTTPException(status_code=404, detail="Submission not found")
    if submission.get("status") == SubmissionStatus.GRADED.value:
        raise HTTPException(status_code=400, detail="Cannot regenerate feedback for an already graded submission")

    refs = Submission(**submission).grading_refs()
    try:
        result = await services.queue.run_exclusive(
            submission_id, refs,
            lambda: services.drafts.generate_draft_internal(
                submission_id, refs, previous_feedback=submission.get("ai_feedback"),
            ),
        )
    except JobAlreadyTracked:
        raise HTTPException(status_code=409, detail="AI grading is already running for this submission")
    except GradingServiceError as e:
        logger.error(f"Regeneration failed for {submission_id}: {e}")
        raise HTTPException(status_code=502, detail="Failed to generate draft feedback")
    if result is None:
        raise HTTPException(status_code=409, detail="Submission was graded while feedback was regenerating")
    return {"success": True, "feedback": result.feedback, "score": result.score}


@router.get("/submissions")
async def get_submissions(
    test_id: Optional[str] = None,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Submissions in the user's organization, newest first"""
    query = {"organization_id": user.organization_id}
    if test_id:
        query["test_id"] = test_id
    if user.role == "student":
        query["student_email"] = user.email

    submissions = await services.db.submissions.find(query, {"_id": 0}).sort("created_at", -1).to_list(500)
    return serialize_doc(submissions)


@router.get("/submissions/{submission_id}")
async def get_submission(
    submission_id: str,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    query = {"submission_id": submission_id, "organization_id": user.organization_id}
    if user.role == "student":
        query["student_email"] = user.email
    submission = await services.db.submissions.find_one(query, {"_id": 0})
    if not submission:
        raise HTTPException(status_code=404, detail="Submission not found")
    return serialize_doc(submission)
