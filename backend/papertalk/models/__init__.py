"""Pydantic models for PaperTalk application"""

from .user import User
from .submission import (
    SubmissionStatus,
    ProcessingStatus,
    SubmittedBy,
    Submission,
    MagicLink,
    Exam,
    SubmissionCreate,
    TeacherSubmissionCreate,
    FinalizeGradeRequest,
)
from .sync import BulkSubmissionRequest, BulkSubmissionResult
from .grade import GradingResult, QuestionGrade, SectionGrade, ParsedGrade, MarksUpdateRequest
