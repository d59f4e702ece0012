"""
API tests over FastAPI's TestClient with a scripted model backend.
"""
import asyncio
import base64

import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from api.routes.notes import GenerationJob
from services.generation.retry_policy import RetryPolicy
from services.persistence.repositories import NoteRepository

from conftest import QUIZ_REPLY, empty_stream_script, success_script

PREFIX = "/api/v1"


@pytest.fixture
def app(client, database):
    return create_app(streaming_client=client, database=database, validate_config=False)


@pytest.fixture
def http(app):
    with TestClient(app) as test_client:
        yield test_client


def upload(text: str) -> dict:
    return {
        "name": "lecture.txt",
        "mime_type": "text/plain",
        "data_base64": base64.b64encode(text.encode()).decode("ascii"),
    }


async def store(database, note):
    await NoteRepository(database).save(note)


class TestHealth:
    def test_health(self, http):
        response = http.get("/health")

        assert response.status_code == 200
        assert response.json()["generation_status"] == "IDLE"
        assert response.json()["missing_tables"] == []


class TestProfileRoutes:
    """Test the learner profile endpoints."""

    def test_save_and_read(self, http):
        response = http.put(f"{PREFIX}/profile", json={"name": "Sam", "exam_goal": "USMLE Step 1"})
        assert response.status_code == 200

        profile = http.get(f"{PREFIX}/profile").json()["profile"]
        assert profile["name"] == "Sam"

    def test_delete_missing_profile(self, http):
        assert http.delete(f"{PREFIX}/profile").status_code == 404


class TestGenerationRoutes:
    """Test generation jobs and stored notes."""

    def test_generate_and_fetch(self, http, client):
        client.document_scripts.append(success_script())

        response = http.post(f"{PREFIX}/notes/generate", json={
            "topic": "Cardiology",
            "files": [upload("Preload and afterload notes.")],
        })
        assert response.status_code == 200
        job_id = response.json()["job_id"]

        job = http.get(f"{PREFIX}/notes/jobs/{job_id}").json()
        assert job["status"] == "SUCCEEDED"
        assert job["generation_status"] == "COMPLETE"
        assert job["note_ready"] is True
        assert client.document_calls[0]["files"][0].data == b"Preload and afterload notes."

        note = http.get(f"{PREFIX}/notes/{job['note_id']}").json()["note"]
        assert note["title"] == "Cardiac Output"

        listed = http.get(f"{PREFIX}/notes").json()
        assert [n["id"] for n in listed] == [job["note_id"]]

    def test_empty_output_opens_recovery(self, http, client):
        client.document_scripts.append(empty_stream_script())

        job_id = http.post(f"{PREFIX}/notes/generate", json={"topic": "Cardiology"}).json()["job_id"]

        job = http.get(f"{PREFIX}/notes/jobs/{job_id}").json()
        assert job["status"] == "COUNTING_DOWN"
        assert job["error_kind"] == "TRANSIENT_EMPTY_OUTPUT"
        assert job["countdown_remaining"] == 60

        cancelled = http.post(f"{PREFIX}/notes/jobs/{job_id}/cancel").json()
        assert cancelled["status"] == "IDLE"
        assert http.post(f"{PREFIX}/notes/jobs/{job_id}/retry").status_code == 409

    def test_manual_retry(self, http, client):
        client.document_scripts.append(empty_stream_script())
        client.document_scripts.append(success_script())
        job_id = http.post(f"{PREFIX}/notes/generate", json={"topic": "Cardiology"}).json()["job_id"]

        http.post(f"{PREFIX}/notes/jobs/{job_id}/retry")

        job = http.get(f"{PREFIX}/notes/jobs/{job_id}").json()
        assert job["status"] == "SUCCEEDED"
        assert job["attempts"] == 2
        assert len(client.document_calls) == 2

    def test_cancel_finished_job_refused(self, http, client):
        client.document_scripts.append(success_script())
        job_id = http.post(f"{PREFIX}/notes/generate", json={"topic": "Cardiology"}).json()["job_id"]

        response = http.post(f"{PREFIX}/notes/jobs/{job_id}/cancel")

        assert response.status_code == 409
        job = http.get(f"{PREFIX}/notes/jobs/{job_id}").json()
        assert job["status"] == "SUCCEEDED"
        assert http.get(f"{PREFIX}/notes/{job['note_id']}").status_code == 200

    def test_generate_refused_while_job_is_queued(self, http, app, client):
        held = RetryPolicy(app.state.orchestrator)
        held.reserve()
        app.state.jobs["job_held"] = GenerationJob(job_id="job_held", topic="Renal", policy=held)

        response = http.post(f"{PREFIX}/notes/generate", json={"topic": "Cardiology"})

        assert response.status_code == 409
        assert client.document_calls == []

    def test_bad_base64(self, http):
        response = http.post(f"{PREFIX}/notes/generate", json={
            "topic": "Cardiology",
            "files": [{"name": "x.txt", "data_base64": "***"}],
        })

        assert response.status_code == 400

    def test_unknown_note_and_job(self, http):
        assert http.get(f"{PREFIX}/notes/missing").status_code == 404
        assert http.delete(f"{PREFIX}/notes/missing").status_code == 404
        assert http.get(f"{PREFIX}/notes/jobs/job_missing").status_code == 404


class TestChatRoutes:
    """Test tutor sessions over HTTP."""

    @pytest.fixture
    def session_id(self, http, database, note):
        asyncio.run(store(database, note))
        response = http.post(f"{PREFIX}/chat/sessions", json={"note_id": note.id})
        assert response.status_code == 200
        return response.json()["session_id"]

    def test_session_for_missing_note(self, http):
        assert http.post(f"{PREFIX}/chat/sessions", json={"note_id": "missing"}).status_code == 404

    def test_send_message(self, http, client, session_id):
        client.queue_reply("Preload is stretch.")

        session = http.post(f"{PREFIX}/chat/sessions/{session_id}/messages", json={"message": "What is preload?"}).json()

        assert [m["text"] for m in session["messages"]] == ["What is preload?", "Preload is stretch."]
        assert session["is_sending"] is False

    def test_quiz_flow(self, http, client, session_id):
        client.queue_reply(QUIZ_REPLY)
        session = http.post(f"{PREFIX}/chat/sessions/{session_id}/messages", json={"message": "quiz me"}).json()
        question_id = session["messages"][-1]["id"]

        assert http.post(f"{PREFIX}/chat/sessions/{session_id}/quiz/{question_id}/submit").status_code == 400

        http.post(f"{PREFIX}/chat/sessions/{session_id}/quiz/{question_id}/answer", json={"answer": "C"})
        client.queue_feedback(is_correct=True)
        session = http.post(f"{PREFIX}/chat/sessions/{session_id}/quiz/{question_id}/submit").json()

        assert client.quiz_calls[0]["answer"] == "C) IV fluid bolus"
        assert session["quiz_actions_message_id"] == session["messages"][-1]["id"]

    def test_mode_refused_during_simulation(self, http, client, session_id):
        client.queue_reply("A 54-year-old man presents with chest pain.")
        started = http.post(f"{PREFIX}/chat/sessions/{session_id}/mode", json={"mode": "clinical"}).json()
        assert started["accepted"] is True
        assert started["session"]["simulation_locked"] is True

        refused = http.post(f"{PREFIX}/chat/sessions/{session_id}/mode", json={"mode": "quiz"}).json()

        assert refused["accepted"] is False
        assert refused["session"]["mode"] == "clinical"
        assert refused["session"]["notice"]

    def test_unknown_mode(self, http, session_id):
        response = http.post(f"{PREFIX}/chat/sessions/{session_id}/mode", json={"mode": "debate"})

        assert response.status_code == 422

    def test_reset(self, http, client, session_id):
        client.queue_reply("Hello.")
        http.post(f"{PREFIX}/chat/sessions/{session_id}/messages", json={"message": "Hi"})

        session = http.post(f"{PREFIX}/chat/sessions/{session_id}/reset").json()

        assert session["messages"] == []
        assert session["mode"] == "tutor"
