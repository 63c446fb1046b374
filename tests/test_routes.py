"""HTTP surface: bulk wire contract, auth, tenant scoping, grading endpoints."""

import asyncio

import pytest

from tests.conftest import EXPIRED_LINK, TEST_ID, submission_payload

pytestmark = pytest.mark.asyncio


async def wait_for_ready(async_client, submission_id, headers, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        response = await async_client.get(f"/api/submissions/{submission_id}", headers=headers)
        if response.json()["processing_status"] == "ready":
            return response.json()
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("submission never became ready")
        await asyncio.sleep(0.01)


async def test_health(async_client):
    response = await async_client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


async def test_single_submission(async_client):
    response = await async_client.post("/api/submissions", json=submission_payload())
    assert response.status_code == 200
    assert response.json()["success"] is True

    duplicate = await async_client.post("/api/submissions", json=submission_payload())
    assert duplicate.status_code == 409
    assert duplicate.json()["detail"] == "You have already submitted this test"

    expired = await async_client.post("/api/submissions", json=submission_payload(email="x@example.com",
                                                                                  token=EXPIRED_LINK))
    assert expired.status_code == 400
    assert expired.json()["detail"] == "Magic link has expired"


async def test_bulk_returns_per_item_results(async_client):
    response = await async_client.post("/api/submissions/bulk", json={
        "submissions": [
            submission_payload(email="one@example.com"),
            submission_payload(email="two@example.com", token=EXPIRED_LINK),
        ],
        "localIds": ["local_a", "local_b"],
    })

    assert response.status_code == 200
    first, second = response.json()
    assert first["localId"] == "local_a"
    assert first["success"] is True
    assert first["serverId"].startswith("sub_")
    assert "error" not in first
    assert second == {"localId": "local_b", "success": False, "error": "Magic link has expired"}


@pytest.mark.parametrize(
    "body, message",
    [
        ({"submissions": [], "localIds": []}, "submissions array required"),
        ({"submissions": [submission_payload()], "localIds": []}, "localIds must match submissions length"),
        ({"submissions": [{"studentName": "Lisa"}], "localIds": ["local_1"]}, "Invalid request"),
        ({"localIds": ["local_1"]}, "Invalid request"),
    ],
)
async def test_bulk_rejects_malformed_requests(async_client, body, message):
    response = await async_client.post("/api/submissions/bulk", json=body)
    assert response.status_code == 400
    assert message in response.json()["detail"]


async def test_reads_require_authentication(async_client):
    assert (await async_client.get("/api/submissions")).status_code == 401
    stale = await async_client.get("/api/submissions", headers={"Authorization": "Bearer session_stale"})
    assert stale.status_code == 401
    assert stale.json()["detail"] == "Session expired"


async def test_session_cookie_is_accepted(async_client):
    response = await async_client.get("/api/submissions", headers={"Cookie": "session_token=session_teacher"})
    assert response.status_code == 200


async def test_list_and_detail_are_tenant_scoped(async_client, teacher_headers):
    created = (await async_client.post("/api/submissions", json=submission_payload())).json()

    listing = await async_client.get("/api/submissions", params={"test_id": TEST_ID}, headers=teacher_headers)
    assert [s["submission_id"] for s in listing.json()] == [created["id"]]

    outsider = {"Authorization": "Bearer session_outsider"}
    assert (await async_client.get("/api/submissions", headers=outsider)).json() == []
    assert (await async_client.get(f"/api/submissions/{created['id']}", headers=outsider)).status_code == 404


async def test_students_only_see_their_own(async_client):
    await async_client.post("/api/submissions", json=submission_payload(email="bart@example.com"))
    await async_client.post("/api/submissions", json=submission_payload(email="lisa@example.com"))

    student = {"Authorization": "Bearer session_student"}
    listing = (await async_client.get("/api/submissions", headers=student)).json()
    assert [s["student_email"] for s in listing] == ["bart@example.com"]


async def test_teacher_submission_endpoint(async_client, teacher_headers):
    await async_client.post("/api/submissions", json=submission_payload())
    body = {"studentName": "Lisa", "studentEmail": "lisa@example.com",
            "imageUrls": ["https://cdn.example.com/rescan.jpg"]}

    response = await async_client.post(f"/api/tests/{TEST_ID}/teacher-submissions", json=body,
                                       headers=teacher_headers)
    assert response.status_code == 200
    assert response.json()["updated"] is True

    student = {"Authorization": "Bearer session_student"}
    forbidden = await async_client.post(f"/api/tests/{TEST_ID}/teacher-submissions", json=body, headers=student)
    assert forbidden.status_code == 403


async def test_retrigger_endpoint(async_client, services, teacher_headers):
    created = (await async_client.post("/api/submissions", json=submission_payload())).json()
    await wait_for_ready(async_client, created["id"], teacher_headers)

    response = await async_client.post(f"/api/submissions/{created['id']}/retrigger", headers=teacher_headers)
    assert response.status_code == 200
    assert response.json() == {"success": True, "submission_id": created["id"]}

    missing = await async_client.post("/api/submissions/sub_missing/retrigger", headers=teacher_headers)
    assert missing.status_code == 404


async def test_regenerate_passes_previous_feedback(async_client, grader, teacher_headers):
    created = (await async_client.post("/api/submissions", json=submission_payload())).json()
    await wait_for_ready(async_client, created["id"], teacher_headers)

    response = await async_client.post(f"/api/submissions/{created['id']}/regenerate", headers=teacher_headers)

    assert response.status_code == 200
    assert response.json()["score"] == 80
    assert grader.calls[-1]["previous_feedback"] == "Well done on the first section."


async def test_retrigger_during_regenerate_grades_once(async_client, services, grader, teacher_headers):
    created = (await async_client.post("/api/submissions", json=submission_payload())).json()
    await wait_for_ready(async_client, created["id"], teacher_headers)
    grader.delay = 0.2

    regenerate = asyncio.create_task(
        async_client.post(f"/api/submissions/{created['id']}/regenerate", headers=teacher_headers)
    )
    while len(grader.calls) < 2:
        await asyncio.sleep(0.005)
    retrigger = await async_client.post(f"/api/submissions/{created['id']}/retrigger", headers=teacher_headers)
    again = await async_client.post(f"/api/submissions/{created['id']}/regenerate", headers=teacher_headers)

    assert retrigger.status_code == 200
    assert again.status_code == 409
    assert (await regenerate).status_code == 200
    await services.runner.drain(timeout=2)
    assert len(grader.calls) == 2
    assert grader.peak == 1


async def test_regenerate_refuses_graded_submission(async_client, services, grader, teacher_headers):
    created = (await async_client.post("/api/submissions", json=submission_payload())).json()
    await wait_for_ready(async_client, created["id"], teacher_headers)
    await services.db.submissions.update_one({"submission_id": created["id"]}, {"$set": {"status": "graded"}})

    response = await async_client.post(f"/api/submissions/{created['id']}/regenerate", headers=teacher_headers)

    assert response.status_code == 400
    assert len(grader.calls) == 1


async def test_breakdown_and_mark_overrides(async_client, services, teacher_headers):
    created = (await async_client.post("/api/submissions", json=submission_payload())).json()
    await wait_for_ready(async_client, created["id"], teacher_headers)
    await services.db.submissions.update_one({"submission_id": created["id"]}, {"$set": {
        "ai_feedback": "Question 1: Marks Awarded: 3/5\nQuestion 2: Marks Awarded: 2/5",
        "final_score": 50,
    }})

    breakdown = await async_client.get(f"/api/submissions/{created['id']}/breakdown", headers=teacher_headers)
    assert breakdown.status_code == 200
    section = breakdown.json()["sections"][0]
    assert [q["awarded_marks"] for q in section["questions"]] == [3, 2]

    response = await async_client.post(
        f"/api/submissions/{created['id']}/marks",
        json={"updatedMarks": {"All Questions-Q2": 5}},
        headers=teacher_headers,
    )
    assert response.status_code == 200
    assert response.json()["score"] == 8
    assert "Marks Awarded: 5/5" in response.json()["feedback"]


async def test_finalize_without_audio(async_client, teacher_headers):
    created = (await async_client.post("/api/submissions", json=submission_payload())).json()
    await wait_for_ready(async_client, created["id"], teacher_headers)

    response = await async_client.post(
        f"/api/submissions/{created['id']}/finalize",
        json={"finalFeedback": "Great job, Lisa.", "finalScore": 88},
        headers=teacher_headers,
    )
    assert response.status_code == 200
    assert response.json() == {"success": True, "audio_pending": False}

    record = (await async_client.get(f"/api/submissions/{created['id']}", headers=teacher_headers)).json()
    assert (record["status"], record["processing_status"], record["final_score"]) == ("graded", "graded", 88)
    assert record["feedback_approved"] is True

    retrigger = await async_client.post(f"/api/submissions/{created['id']}/retrigger", headers=teacher_headers)
    assert retrigger.status_code == 400

    invalid = await async_client.post(
        f"/api/submissions/{created['id']}/finalize",
        json={"finalFeedback": "x", "finalScore": 140},
        headers=teacher_headers,
    )
    assert invalid.status_code == 422


async def test_queue_status(async_client, teacher_headers):
    response = await async_client.get("/api/ai-queue/status", headers=teacher_headers)
    assert response.status_code == 200
    assert response.json()["max_concurrent"] == 2
    assert response.json()["total_pending"] == 0


async def test_files_without_storage(async_client):
    response = await async_client.get("/api/files/65f000000000000000000000")
    assert response.status_code == 404
