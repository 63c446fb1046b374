"""
Grading service - AI-powered answer sheet evaluation.

Fetches the question paper and the student's pages, asks Gemini for personalised
feedback ending in a ``SCORE: <n>`` line, and parses the score out of the reply.
"""

import asyncio
import re
from typing import Awaitable, Callable, List, Optional, Tuple

import httpx

from papertalk.config import logger, GEMINI_MODEL, AI_REQUEST_TIMEOUT
from papertalk.models.grade import GradingResult
from papertalk.services.llm import LlmChat, LlmServiceError, UserMessage, ImageContent

RETRYABLE_STATUS_CODES = {429, 503}

# Ordered from most explicit to loosest
SCORE_PATTERNS = [
    # "SCORE: 87" (optionally "/100") at the very end, even mid-line
    re.compile(r"SCORE:[ \t]*(\d+)(?:[ \t]*/[ \t]*100)?\s*\Z", re.IGNORECASE | re.MULTILINE),
    # "SCORE: 87" on its own line anywhere
    re.compile(r"SCORE:[ \t]*(\d+)(?:[ \t]*/[ \t]*100)?[ \t]*$", re.IGNORECASE | re.MULTILINE),
    # "Final Score: 87" or "Total Score: 87"
    re.compile(r"\b(?:Final|Total)\s+Score:\s*(\d+)(?:\s*/\s*100)?", re.IGNORECASE),
]


class GradingServiceError(Exception):
    """AI grading failed. ``status_code`` lets the queue tell overload from hard errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def extract_score(text: str) -> Tuple[str, Optional[int]]:
    """
    Pull the 0-100 score out of AI feedback.

    Returns the feedback with the score marker removed and the score, or the
    unmodified text and None when no marker is found.
    """
    for pattern in SCORE_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        score = max(0, min(100, int(match.group(1))))
        feedback = (text[:match.start()] + text[match.end():]).strip()
        return feedback, score
    return text, None


def build_grading_prompt(student_name: str, has_question_paper: bool,
                         previous_feedback: Optional[str] = None) -> str:
    prompt = f"""You are an expert teacher grading student exam papers.
You are grading the submission for {student_name}.

PERSONALIZATION:
- Address {student_name} by name throughout your feedback
- Use a supportive, encouraging and constructive tone
- Be specific and actionable: explain each mistake and how to fix it
- Acknowledge what {student_name} did well, even when the overall result is weak

CRITICAL GRADING RULES:
1. You MUST identify ALL questions in the question paper and check whether each one was answered
2. Unanswered questions get ZERO marks
3. Partial answers get proportional credit only (half of a 10-mark answer = 5 marks)
4. Do not give credit for missing or incomplete answers
5. The score must reflect the actual share of correct, complete answers and must not be inflated

Instructions:
1. Review the question paper: question numbers, sections, total number of questions, mark allocation
2. Match each of the student's answers to its question, in order
3. For EACH question state whether it was answered (Yes/No/Partial), whether it is correct, and the marks awarded as "Marks Awarded: <awarded>/<max>"
4. List every unanswered question explicitly (e.g. "Question 3 was not attempted")
5. Finish with an overall performance assessment and areas for improvement written to {student_name}
6. Use plain text only (no markdown formatting)
7. End your response with the numerical score from 0-100 on its own line, exactly as: "SCORE: [number]"

SCORING GUIDELINES:
- 20% of questions unanswered -> score around 80 at most
- 50% of questions unanswered -> score around 50 at most
- Be conservative with partial credit"""

    if previous_feedback:
        prompt += (
            "\n\nThis is a regeneration request. Keep your assessment consistent with the previous "
            "grading below, refining it where needed. Keep the score close to the previous one unless "
            f"you find a clear grading error.\n\nPrevious feedback:\n{previous_feedback}"
        )

    if has_question_paper:
        prompt += (
            "\n\nThe files are in order: the ORIGINAL QUESTION PAPER comes first, followed by the "
            "STUDENT'S ANSWER SHEET. Compare them carefully and grade strictly on what was answered correctly."
        )
    else:
        prompt += "\n\nThe files contain the STUDENT'S ANSWER SHEET in page order."

    prompt += "\n\nPlease grade this exam submission now."
    return prompt


def resolve_mime_type(url: str, content_type: Optional[str]) -> str:
    content_type = (content_type or "").split(";")[0].strip().lower()
    if url.lower().split("?")[0].endswith(".pdf") or content_type == "application/pdf":
        return "application/pdf"
    if content_type.startswith("image/"):
        return content_type
    return "image/jpeg"


class AIGradingClient:
    """Wraps one logical grading call to Gemini, with bounded retries on overload."""

    def __init__(
        self,
        api_key: Optional[str],
        http_client: httpx.AsyncClient,
        model_name: str = GEMINI_MODEL,
        request_timeout: float = AI_REQUEST_TIMEOUT,
        max_retries: int = 3,
        base_delay: float = 2.0,
        chat_factory: Optional[Callable[[], LlmChat]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api_key = api_key
        self.http_client = http_client
        self.model_name = model_name
        self.request_timeout = request_timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._chat_factory = chat_factory or self._default_chat
        self._sleep = sleep

    def _default_chat(self) -> LlmChat:
        if not self.api_key:
            raise GradingServiceError("AI service not configured (Missing API Key)")
        return (
            LlmChat(api_key=self.api_key, timeout=self.request_timeout)
            .with_model(self.model_name)
            .with_params(temperature=0)
        )

    async def fetch_materials(self, urls: List[str]) -> List[ImageContent]:
        """Download each file in order. One buffer is decoded at a time."""
        parts = []
        for url in urls:
            try:
                response = await self.http_client.get(url)
                response.raise_for_status()
                mime_type = resolve_mime_type(url, response.headers.get("content-type"))
                parts.append(ImageContent.from_bytes(response.content, mime_type))
            except httpx.HTTPError as e:
                logger.error(f"Error fetching image {url}: {e}")
        return parts

    async def grade(
        self,
        material_urls: List[str],
        student_name: str = "Student",
        has_question_paper: bool = False,
        previous_feedback: Optional[str] = None,
    ) -> GradingResult:
        """
        Grade the material (question paper first if present, then the answers).

        Raises GradingServiceError on failure; never returns partial feedback.
        """
        prompt = build_grading_prompt(student_name, has_question_paper, previous_feedback)

        parts = await self.fetch_materials(material_urls)
        if not parts:
            raise GradingServiceError("No valid images found for processing")

        message = UserMessage(text=prompt, file_contents=parts)
        chat = self._chat_factory()
        response_text = await self._send_with_retry(chat, message)

        feedback, score = extract_score(response_text)
        if score is None:
            logger.warning("AI feedback has no SCORE line - score left for the teacher")
        return GradingResult(feedback=feedback, score=score)

    async def _send_with_retry(self, chat: LlmChat, message: UserMessage) -> str:
        attempts = self.max_retries + 1
        for attempt in range(attempts):
            try:
                text = await chat.send_message(message)
            except LlmServiceError as e:
                retryable = e.network or e.status_code in RETRYABLE_STATUS_CODES
                if retryable and attempt < self.max_retries:
                    delay = self.base_delay * (2 ** attempt)
                    reason = "Network error" if e.network else f"Gemini API {e.status_code} error"
                    logger.info(f"{reason} (attempt {attempt + 1}/{attempts}). Retrying in {delay}s...")
                    await self._sleep(delay)
                    continue
                raise GradingServiceError(str(e), status_code=e.status_code) from e

            if not text or not text.strip():
                raise GradingServiceError("Gemini returned an empty response")
            return text.strip()

        raise GradingServiceError("Failed to generate draft feedback after retries")
