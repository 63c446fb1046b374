"""
Grade finalization and spoken feedback.

The teacher's grade is saved first; the ElevenLabs audio is produced in the
background and its failure never rolls the grade back.
"""

import re
from typing import Optional

import httpx

from papertalk.config import logger, GEMINI_MODEL
from papertalk.models.submission import ProcessingStatus, SubmissionStatus
from papertalk.models.user import User
from papertalk.services.background import BackgroundTaskRunner
from papertalk.services.ingestion import SubmissionRejected
from papertalk.services.llm import LlmChat, LlmServiceError, UserMessage
from papertalk.services.storage import ObjectStore
from papertalk.utils.serialization import utc_now_iso

ELEVENLABS_TTS_URL = "https://api.elevenlabs.io/v1/text-to-speech/{voice_id}"
ELEVENLABS_MODEL_ID = "eleven_multilingual_v2"
CREDITS_RE = re.compile(r"You have (\d+) credits remaining")


class TextToSpeechError(Exception):
    def __init__(self, message: str, status_code: int, detail: Optional[dict] = None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail or {}

    @property
    def quota_exceeded(self) -> bool:
        return self.status_code == 401 and self.detail.get("status") == "quota_exceeded"


def extract_available_credits(message: str) -> Optional[int]:
    match = CREDITS_RE.search(message or "")
    return int(match.group(1)) if match else None


def truncate_text_for_quota(text: str, max_credits: int) -> str:
    """Cut text to ~95% of the remaining credits, preferring a word boundary."""
    safe_limit = int(max_credits * 0.95)
    if len(text) <= safe_limit:
        return text
    truncated = text[:safe_limit]
    last_space = truncated.rfind(" ")
    if last_space > safe_limit * 0.9:
        truncated = truncated[:last_space]
    return truncated + "... [Audio truncated due to quota limits. Full feedback available in text.]"


class AudioFeedbackGenerator:
    """Synthesizes feedback audio with ElevenLabs and stores the MP3."""

    def __init__(self, api_key: str, store: ObjectStore, http_client: httpx.AsyncClient,
                 llm_api_key: Optional[str] = None):
        self.api_key = api_key
        self.store = store
        self.http_client = http_client
        self.llm_api_key = llm_api_key

    async def synthesize(self, text: str, voice_id: str) -> bytes:
        response = await self.http_client.post(
            ELEVENLABS_TTS_URL.format(voice_id=voice_id),
            params={"output_format": "mp3_44100_128"},
            headers={"xi-api-key": self.api_key},
            json={"text": text, "model_id": ELEVENLABS_MODEL_ID},
        )
        if response.is_success:
            return response.content

        detail = {}
        try:
            detail = response.json().get("detail") or {}
        except ValueError:
            pass
        if not isinstance(detail, dict):
            detail = {"message": str(detail)}
        raise TextToSpeechError(
            f"ElevenLabs error {response.status_code}: {detail.get('message') or response.text[:200]}",
            status_code=response.status_code,
            detail=detail,
        )

    async def summarize_for_audio(self, feedback: str, student_name: str, max_length: int) -> str:
        """Ask Gemini for a short spoken version of the feedback."""
        if not self.llm_api_key:
            raise LlmServiceError("GEMINI_API_KEY not configured")
        prompt = f"""You are a supportive teacher recording a short spoken feedback summary for {student_name}.

The full written feedback is:
{feedback}

Write a conversational summary of at most {max_length} characters that addresses {student_name} directly,
acknowledges what went well, and highlights the 2-3 most important things to improve with concrete advice.
No section headers, question numbers or mark breakdowns."""
        chat = LlmChat(api_key=self.llm_api_key).with_model(GEMINI_MODEL)
        summary = (await chat.send_message(UserMessage(text=prompt))).strip()
        if not summary:
            raise LlmServiceError("Failed to generate audio summary")
        return summary[:max_length - 50] + "..." if len(summary) > max_length else summary

    async def generate(self, submission_id: str, text: str, voice_id: str, student_name: str) -> str:
        """Return the public URL of the stored audio."""
        try:
            audio = await self.synthesize(text, voice_id)
        except TextToSpeechError as e:
            if not e.quota_exceeded:
                raise
            credits = extract_available_credits(e.detail.get("message", ""))
            if credits and credits > 200:
                try:
                    short_text = await self.summarize_for_audio(text, student_name, int(credits * 0.95))
                except LlmServiceError as summary_error:
                    logger.warning(f"Audio summary failed, truncating instead: {summary_error}")
                    short_text = truncate_text_for_quota(text, credits)
            elif credits and credits > 100:
                short_text = truncate_text_for_quota(text, credits)
            else:
                raise
            logger.info(f"TTS quota low ({credits} credits), sending {len(short_text)} chars")
            audio = await self.synthesize(short_text, voice_id)

        return await self.store.upload(audio, f"{submission_id}-audio.mp3", "audio/mpeg",
                                       submission_id=submission_id)


class GradeFinalizer:

    def __init__(self, db, runner: BackgroundTaskRunner, audio: Optional[AudioFeedbackGenerator],
                 default_voice_id: str):
        self.db = db
        self.runner = runner
        self.audio = audio
        self.default_voice_id = default_voice_id

    async def finalize_grade(self, user: User, submission_id: str, final_feedback: str,
                             final_score: int, voice_id: Optional[str] = None) -> dict:
        submission = await self.db.submissions.find_one(
            {"submission_id": submission_id, "organization_id": user.organization_id},
            {"_id": 0}
        )
        if not submission:
            raise SubmissionRejected("Submission not found", status_code=404)

        # Explicit voice, then the teacher's cloned voice, then the default
        selected_voice_id = voice_id or user.voice_id or self.default_voice_id

        organization = await self.db.organizations.find_one(
            {"organization_id": user.organization_id}, {"_id": 0, "settings": 1}
        )
        settings = (organization or {}).get("settings") or {}
        auto_approve = bool(settings.get("auto_approve_feedback", False))

        with_audio = self.audio is not None
        await self.db.submissions.update_one(
            {"submission_id": submission_id},
            {"$set": {
                "ai_feedback": final_feedback,
                "final_score": final_score,
                "status": SubmissionStatus.GRADED.value,
                "processing_status": (ProcessingStatus.GENERATING_AUDIO if with_audio
                                      else ProcessingStatus.GRADED).value,
                "voice_id": selected_voice_id,
                "feedback_approved": auto_approve,
                "audio_error": None,
                "updated_at": utc_now_iso(),
            }}
        )

        if with_audio:
            self.runner.spawn(
                self._generate_audio_in_background(
                    submission_id, final_feedback, selected_voice_id,
                    submission.get("student_name") or "Student",
                ),
                name=f"audio-{submission_id}",
            )
        else:
            logger.warning("ELEVENLABS_API_KEY not configured - grade finalized without audio")

        return {"success": True, "audio_pending": with_audio}

    async def _generate_audio_in_background(self, submission_id: str, feedback: str,
                                            voice_id: str, student_name: str):
        update = {"processing_status": ProcessingStatus.GRADED.value, "updated_at": utc_now_iso()}
        try:
            update["audio_url"] = await self.audio.generate(submission_id, feedback, voice_id, student_name)
        except Exception as e:
            logger.error(f"Background audio generation error for {submission_id}: {e}", exc_info=True)
            update["audio_error"] = str(e)

        await self.db.submissions.update_one({"submission_id": submission_id}, {"$set": update})
