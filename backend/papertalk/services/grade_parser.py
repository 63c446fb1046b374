"""
Structured view of AI feedback: parse per-question marks out of the text, rebuild
the text after a teacher edits marks, or patch marks in place.
"""

import re
from typing import Dict, List, Optional

from papertalk.models.grade import ParsedGrade, QuestionGrade, SectionGrade

TRAILING_SCORE_RE = re.compile(r"SCORE:\s*(\d+)(?:\s*/\s*100)?\s*\Z", re.IGNORECASE)
SECTION_RE = re.compile(r"(?:^|\n)(Section\s+[A-Z]:[^\n]*)", re.IGNORECASE)
QUESTION_RE = re.compile(
    r"(?:Question|Q)\s*(\d+)[:.)]?\s*([^\n]*?)(?:\((\d+)\s*marks?\))?[\s\S]*?"
    r"(?:Marks\s+Awarded|Awarded|Marks?)[:.]?\s*(\d+)\s*/\s*(\d+)",
    re.IGNORECASE,
)
QUESTION_ALT_RE = re.compile(
    r"(?:Question|Q)\s*(\d+)[:.)]?\s*([^\n]*?)\s*(\d+)\s*/\s*(\d+)\s*marks?",
    re.IGNORECASE,
)
QUESTION_FEEDBACK_RE = re.compile(
    r"(?:Student's\s+Attempt|Attempt|Feedback)[:.]?\s*([^\n]+(?:\n(?!Question|Marks)[^\n]+)*)",
    re.IGNORECASE,
)
OVERALL_RE = re.compile(
    r"(?:Overall\s+Performance\s+Assessment|Summary|Overall)[:.]?\s*([\s\S]*?)(?=\n\n|\Z)",
    re.IGNORECASE,
)


def question_key(section_name: str, question_number: str) -> str:
    """Identifier used by teachers' mark overrides."""
    return f"{section_name}-Q{question_number}"


def _parse_questions(section_text: str) -> List[QuestionGrade]:
    questions = []
    for match in QUESTION_RE.finditer(section_text):
        number = match.group(1)
        text = match.group(2).strip() or f"Question {number}"
        if match.group(5):
            max_marks = int(match.group(5))
        elif match.group(3):
            max_marks = int(match.group(3))
        else:
            max_marks = 0

        feedback_match = QUESTION_FEEDBACK_RE.search(match.group(0))
        feedback = feedback_match.group(1).strip() if feedback_match else ""

        questions.append(QuestionGrade(
            question_number=number,
            question_text=text,
            max_marks=max_marks,
            awarded_marks=int(match.group(4)),
            feedback=feedback or text,
        ))

    if not questions:
        for match in QUESTION_ALT_RE.finditer(section_text):
            text = match.group(2).strip()
            questions.append(QuestionGrade(
                question_number=match.group(1),
                question_text=text or f"Question {match.group(1)}",
                max_marks=int(match.group(4)),
                awarded_marks=int(match.group(3)),
                feedback=text,
            ))
    return questions


def _section(name: str, questions: List[QuestionGrade]) -> SectionGrade:
    return SectionGrade(
        section_name=name,
        questions=questions,
        total_marks=sum(q.awarded_marks for q in questions),
        max_section_marks=sum(q.max_marks for q in questions),
    )


def parse_grade_feedback(feedback: str) -> ParsedGrade:
    """Parse AI feedback text into sections and questions with marks."""
    score_match = TRAILING_SCORE_RE.search(feedback)
    total_score = int(score_match.group(1)) if score_match else 0
    body = TRAILING_SCORE_RE.sub("", feedback).strip()

    section_matches = list(SECTION_RE.finditer(body))
    if not section_matches:
        questions = _parse_questions(body)
        sections = [_section("All Questions", questions)] if questions else []
        return ParsedGrade(sections=sections, total_score=total_score, raw_feedback=feedback)

    sections = []
    for idx, match in enumerate(section_matches):
        end = section_matches[idx + 1].start() if idx + 1 < len(section_matches) else len(body)
        section_text = body[match.start():end]
        sections.append(_section(match.group(1).strip(), _parse_questions(section_text)))

    overall_match = OVERALL_RE.search(body)
    overall = overall_match.group(1).strip() if overall_match else ""

    return ParsedGrade(
        sections=sections,
        total_score=total_score,
        raw_feedback=feedback,
        overall_feedback=overall or None,
    )


def reconstruct_feedback(parsed: ParsedGrade, updated_marks: Optional[Dict[str, int]] = None) -> str:
    """Rebuild feedback text from structured grades, applying any mark overrides."""
    updated_marks = updated_marks or {}

    def awarded(section: SectionGrade, question: QuestionGrade) -> int:
        return updated_marks.get(question_key(section.section_name, question.question_number),
                                 question.awarded_marks)

    lines = []
    for section in parsed.sections:
        lines.append(f"{section.section_name}\n")
        for question in section.questions:
            lines.append(f"Question {question.question_number}: {question.question_text}")
            if question.feedback and question.feedback != question.question_text:
                lines.append(question.feedback)
            lines.append(f"Marks Awarded: {awarded(section, question)}/{question.max_marks}\n")

        section_total = sum(awarded(section, q) for q in section.questions)
        section_max = sum(q.max_marks for q in section.questions)
        lines.append(f"Total for {section.section_name}: {section_total}/{section_max} marks\n")

    if parsed.overall_feedback:
        lines.append(f"Overall Performance Assessment:\n{parsed.overall_feedback}\n")

    total = parsed.total_score
    if updated_marks:
        total = sum(awarded(s, q) for s in parsed.sections for q in s.questions)

    lines.append(f"SCORE: {total}")
    return "\n".join(lines)


def update_marks_in_feedback(original: str, updates: Dict[str, Dict[str, int]]) -> str:
    """
    Patch ``old/max`` mark strings in place and shift the final SCORE by the net change.

    ``updates`` maps question keys to ``{"old": .., "new": .., "max": ..}``.
    """
    updated = original
    for update in updates.values():
        old, new, max_marks = update["old"], update["new"], update["max"]
        mark_re = re.compile(rf"\b{old}\s*/\s*{max_marks}\b")
        updated = mark_re.sub(f"{new}/{max_marks}", updated, count=1)

    score_match = re.search(r"SCORE:\s*(\d+)", original, re.IGNORECASE)
    if score_match:
        delta = sum(u["new"] - u["old"] for u in updates.values())
        new_total = max(0, min(100, int(score_match.group(1)) + delta))
        updated = re.sub(r"SCORE:\s*\d+", f"SCORE: {new_total}", updated, count=1, flags=re.IGNORECASE)
    return updated
