"""Structured grade Pydantic models (parsed from AI feedback text)"""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from typing import Dict, Optional, List


class GradingResult(BaseModel):
    """Outcome of one AI grading call"""
    feedback: str
    score: Optional[int] = None  # None = score pending human entry


class QuestionGrade(BaseModel):
    question_number: str
    question_text: str
    max_marks: int
    awarded_marks: int
    feedback: str = ""


class SectionGrade(BaseModel):
    section_name: str
    questions: List[QuestionGrade] = []
    total_marks: int = 0
    max_section_marks: int = 0


class ParsedGrade(BaseModel):
    sections: List[SectionGrade] = []
    total_score: int = 0
    raw_feedback: str
    overall_feedback: Optional[str] = None


class MarksUpdateRequest(BaseModel):
    """Teacher mark overrides keyed by question_key(section, number)"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
    updated_marks: Dict[str, int]
