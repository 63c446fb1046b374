"""Grade finalization and spoken feedback with the ElevenLabs quota fallback."""

import json

import httpx
import pytest

from papertalk.models.user import User
from papertalk.services.background import BackgroundTaskRunner
from papertalk.services.finalize import (
    AudioFeedbackGenerator,
    GradeFinalizer,
    TextToSpeechError,
    extract_available_credits,
    truncate_text_for_quota,
)
from papertalk.services.ingestion import SubmissionRejected
from papertalk.services.storage import ObjectStore
from tests.conftest import ORG_ID, OTHER_ORG_ID, TEST_ID, FakeGridFS

pytestmark = pytest.mark.asyncio

TEACHER = User(user_id="user_teacher", email="teacher@example.com", name="Ms Krabappel",
               role="teacher", organization_id=ORG_ID, voice_id="voice_cloned")

LONG_FEEDBACK = " ".join(["Lisa showed clear working on every algebra question."] * 30)


def quota_response(credits: int) -> httpx.Response:
    return httpx.Response(401, json={"detail": {
        "status": "quota_exceeded",
        "message": f"This request exceeds your quota. You have {credits} credits remaining, "
                   f"while {len(LONG_FEEDBACK)} credits are required for this request.",
    }})


class ElevenLabs:
    """Scripted text-to-speech endpoint. Responses are consumed in order."""

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.texts = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.texts.append(json.loads(request.content)["text"])
        return self.responses.pop(0)


def make_generator(endpoint, llm_api_key=None):
    fs = FakeGridFS()
    store = ObjectStore(fs, public_base_url="https://api.example.com")
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
    return AudioFeedbackGenerator("el-key", store, http_client, llm_api_key=llm_api_key), fs


async def test_extract_available_credits():
    assert extract_available_credits("Sorry. You have 150 credits remaining, while 900 are required.") == 150
    assert extract_available_credits("Invalid API key") is None
    assert extract_available_credits(None) is None


async def test_truncate_text_for_quota():
    assert truncate_text_for_quota("Short feedback.", 500) == "Short feedback."

    truncated = truncate_text_for_quota(LONG_FEEDBACK, 150)
    body, suffix = truncated.split("... ", 1)
    assert len(body) <= 142
    assert LONG_FEEDBACK.startswith(body)
    assert not body.endswith(" ")
    assert suffix.startswith("[Audio truncated")


async def test_audio_is_stored_as_mp3():
    endpoint = ElevenLabs(httpx.Response(200, content=b"ID3-mp3-bytes"))
    generator, fs = make_generator(endpoint)

    url = await generator.generate("sub_1", "Great work, Lisa.", "voice_a", "Lisa")

    assert url.startswith("https://api.example.com/api/files/")
    (grid_out, metadata), = fs.files.values()
    assert (grid_out.filename, grid_out.content_type) == ("sub_1-audio.mp3", "audio/mpeg")
    assert grid_out.read() == b"ID3-mp3-bytes"
    assert metadata == {"submission_id": "sub_1"}
    assert endpoint.texts == ["Great work, Lisa."]


async def test_low_quota_truncates_and_retries():
    endpoint = ElevenLabs(quota_response(150), httpx.Response(200, content=b"ID3"))
    generator, _ = make_generator(endpoint)

    await generator.generate("sub_1", LONG_FEEDBACK, "voice_a", "Lisa")

    assert endpoint.texts[0] == LONG_FEEDBACK
    assert endpoint.texts[1] == truncate_text_for_quota(LONG_FEEDBACK, 150)


async def test_quota_without_summary_key_falls_back_to_truncation():
    endpoint = ElevenLabs(quota_response(500), httpx.Response(200, content=b"ID3"))
    generator, _ = make_generator(endpoint, llm_api_key=None)

    await generator.generate("sub_1", LONG_FEEDBACK, "voice_a", "Lisa")

    assert endpoint.texts[1] == truncate_text_for_quota(LONG_FEEDBACK, 500)


async def test_exhausted_quota_is_raised():
    generator, _ = make_generator(ElevenLabs(quota_response(80)))

    with pytest.raises(TextToSpeechError) as exc_info:
        await generator.generate("sub_1", LONG_FEEDBACK, "voice_a", "Lisa")
    assert exc_info.value.quota_exceeded


async def test_other_tts_errors_are_not_retried():
    endpoint = ElevenLabs(httpx.Response(500, text="upstream exploded"))
    generator, _ = make_generator(endpoint)

    with pytest.raises(TextToSpeechError) as exc_info:
        await generator.generate("sub_1", "Hi", "voice_a", "Lisa")
    assert exc_info.value.status_code == 500
    assert not exc_info.value.quota_exceeded
    assert len(endpoint.texts) == 1


class FakeAudio:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    async def generate(self, submission_id, text, voice_id, student_name):
        self.calls.append((submission_id, text, voice_id, student_name))
        if self.error:
            raise self.error
        return f"https://api.example.com/api/files/{submission_id}-audio"


async def insert_submission(db, submission_id="sub_final"):
    await db.submissions.insert_one({
        "submission_id": submission_id, "organization_id": ORG_ID, "test_id": TEST_ID,
        "student_name": "Lisa", "student_email": "lisa@example.com",
        "image_urls": ["https://cdn.example.com/p.jpg"], "status": "pending",
        "processing_status": "ready", "ai_feedback": "Draft", "final_score": 70,
    })


async def test_finalize_generates_audio_in_background(db):
    runner = BackgroundTaskRunner()
    audio = FakeAudio()
    finalizer = GradeFinalizer(db, runner, audio, default_voice_id="voice_default")
    await insert_submission(db)

    result = await finalizer.finalize_grade(TEACHER, "sub_final", "Excellent, Lisa.", 92)

    assert result == {"success": True, "audio_pending": True}
    record = await db.submissions.find_one({"submission_id": "sub_final"}, {"_id": 0})
    assert (record["status"], record["final_score"]) == ("graded", 92)
    assert record["voice_id"] == "voice_cloned"
    assert record["feedback_approved"] is True

    await runner.drain(timeout=2)
    record = await db.submissions.find_one({"submission_id": "sub_final"}, {"_id": 0})
    assert record["processing_status"] == "graded"
    assert record["audio_url"] == "https://api.example.com/api/files/sub_final-audio"
    assert audio.calls == [("sub_final", "Excellent, Lisa.", "voice_cloned", "Lisa")]


async def test_explicit_voice_wins(db):
    runner = BackgroundTaskRunner()
    audio = FakeAudio()
    await insert_submission(db)

    await GradeFinalizer(db, runner, audio, "voice_default").finalize_grade(
        TEACHER, "sub_final", "Nice.", 80, voice_id="voice_chosen"
    )
    await runner.drain(timeout=2)

    assert audio.calls[0][2] == "voice_chosen"


async def test_audio_failure_keeps_the_grade(db):
    runner = BackgroundTaskRunner()
    finalizer = GradeFinalizer(db, runner, FakeAudio(error=TextToSpeechError("quota", 401)), "voice_default")
    await insert_submission(db)

    await finalizer.finalize_grade(TEACHER, "sub_final", "Excellent, Lisa.", 92)
    await runner.drain(timeout=2)

    record = await db.submissions.find_one({"submission_id": "sub_final"}, {"_id": 0})
    assert (record["status"], record["processing_status"], record["final_score"]) == ("graded", "graded", 92)
    assert record["audio_error"] == "quota"
    assert "audio_url" not in record
    assert runner.failures == []


async def test_finalize_is_tenant_scoped(db):
    await insert_submission(db)
    outsider = TEACHER.model_copy(update={"organization_id": OTHER_ORG_ID})

    with pytest.raises(SubmissionRejected) as exc_info:
        await GradeFinalizer(db, BackgroundTaskRunner(), None, "voice_default").finalize_grade(
            outsider, "sub_final", "Nice.", 80
        )
    assert exc_info.value.status_code == 404
