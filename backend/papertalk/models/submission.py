"""Submission, magic link and test Pydantic models"""

from enum import Enum
from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel
from typing import Optional, List
from datetime import datetime, timezone


class SubmissionStatus(str, Enum):
    PENDING = "pending"
    GRADED = "graded"


class ProcessingStatus(str, Enum):
    PENDING = "pending"  # Waiting for a manual retrigger
    PROCESSING_AI = "processing_ai"
    READY = "ready"  # AI draft available for teacher review
    GENERATING_AUDIO = "generating_audio"
    GRADED = "graded"
    FAILED = "failed"  # AI queue gave up after repeated provider overload


class SubmittedBy(str, Enum):
    STUDENT = "student"
    TEACHER = "teacher"


class Submission(BaseModel):
    """Student answer sheet submission for a test"""
    model_config = ConfigDict(extra="ignore")
    submission_id: str
    organization_id: str
    test_id: str
    student_name: str
    student_email: str
    student_id: Optional[str] = None
    magic_link_id: Optional[str] = None
    image_urls: List[str] = []
    merged_image_url: Optional[str] = None
    submitted_by: SubmittedBy = SubmittedBy.STUDENT
    status: SubmissionStatus = SubmissionStatus.PENDING
    processing_status: ProcessingStatus = ProcessingStatus.PROCESSING_AI
    processing_error: Optional[str] = None
    ai_feedback: Optional[str] = None
    final_score: Optional[int] = None
    audio_url: Optional[str] = None
    audio_error: Optional[str] = None
    voice_id: Optional[str] = None
    feedback_approved: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def grading_refs(self) -> List[str]:
        """Material sent to the AI: the merged document if there is one, else the pages."""
        return [self.merged_image_url] if self.merged_image_url else list(self.image_urls)


class MagicLink(BaseModel):
    """One-time access link a student uses to submit against a test"""
    model_config = ConfigDict(extra="ignore")
    magic_link_id: str
    token: str
    test_id: str
    expires_at: Optional[datetime] = None  # None = never expires
    used: bool = False  # Informational only, does not block reuse
    used_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at < now


class Exam(BaseModel):
    """A test handed out to students (stored in the tests collection)"""
    model_config = ConfigDict(extra="ignore")
    test_id: str
    organization_id: str
    teacher_id: Optional[str] = None
    name: str
    test_paper_url: Optional[str] = None  # Question paper shown to the AI first


class SubmissionCreate(BaseModel):
    """Student submission payload (camelCase on the wire)"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
    student_name: str
    student_email: str
    image_urls: List[str]
    magic_link_token: str


class TeacherSubmissionCreate(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
    student_name: str
    student_email: str
    image_urls: List[str]


class FinalizeGradeRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
    final_feedback: str
    final_score: int = Field(ge=0, le=100)
    voice_id: Optional[str] = None
