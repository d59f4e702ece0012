"""
Study guide generation and note API routes.
"""
import base64
import binascii
import logging
import uuid
from dataclasses import dataclass
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request

from api.models.requests import GenerateNoteRequest
from api.models.responses import GenerateNoteResponse, JobStatusResponse, NoteResponse, NoteSummary
from models.note_models import Note, SourceFile
from models.stream_models import GenerationProgress
from services.generation.retry_policy import OPEN_RECOVERY_STATES, RecoveryState, RetryPolicy

logger = logging.getLogger(__name__)

router = APIRouter()


@dataclass
class GenerationJob:
    """In-memory record of one generation request and its retries."""
    job_id: str
    topic: str
    policy: RetryPolicy
    progress: Optional[GenerationProgress] = None
    thought: str = ""
    note_id: Optional[str] = None
    note_ready: bool = False


def _decode_files(request: GenerateNoteRequest) -> List[SourceFile]:
    files = []
    for uploaded in request.files:
        try:
            data = base64.b64decode(uploaded.data_base64, validate=True)
        except (binascii.Error, ValueError):
            raise HTTPException(status_code=400, detail=f"File is not valid base64: {uploaded.name}")
        files.append(SourceFile(name=uploaded.name, mime_type=uploaded.mime_type, data=data))
    return files


def _generation_busy(state) -> bool:
    """A generation is running, or a job has claimed the orchestrator but not started yet."""
    return state.orchestrator.is_generating or any(job.policy.busy for job in state.jobs.values())


def _get_job(request: Request, job_id: str) -> GenerationJob:
    job = request.app.state.jobs.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


def _job_status(job: GenerationJob) -> JobStatusResponse:
    policy = job.policy
    progress = job.progress
    return JobStatusResponse(
        job_id=job.job_id,
        status=policy.state.value,
        generation_status=policy.orchestrator.status.value,
        phase=progress.phase.value if progress else None,
        stage=progress.stage if progress else None,
        markdown_progress=progress.markdown_progress if progress else 0,
        thought=job.thought,
        note_id=job.note_id,
        note_ready=job.note_ready,
        attempts=policy.attempts,
        countdown_remaining=policy.remaining,
        error=policy.error_message,
        error_kind=policy.error_kind.value if policy.error_kind else None,
    )


@router.post("/generate", response_model=GenerateNoteResponse)
async def generate_note(payload: GenerateNoteRequest, request: Request, background_tasks: BackgroundTasks):
    """
    Start generating a study guide.

    Runs in the background; poll the job for progress. A job still waiting
    for a retry is abandoned when a new one starts.
    """
    state = request.app.state
    orchestrator = state.orchestrator
    if _generation_busy(state):
        raise HTTPException(status_code=409, detail="A generation is already running")

    files = _decode_files(payload)

    for previous in state.jobs.values():
        if previous.policy.state in OPEN_RECOVERY_STATES:
            previous.policy.cancel()

    job_id = f"job_{uuid.uuid4().hex[:12]}"

    def on_phase_update(progress: GenerationProgress):
        job.progress = progress
        job.note_id = progress.note_id

    def on_thought(text: str):
        job.thought = text

    def on_note_ready(note: Note):
        job.note_ready = True
        job.note_id = note.id

    policy = RetryPolicy(
        orchestrator,
        countdown_seconds=state.retry_countdown_seconds,
        on_phase_update=on_phase_update,
        on_thought=on_thought,
        on_note_ready=on_note_ready,
    )
    job = GenerationJob(job_id=job_id, topic=payload.topic, policy=policy)
    # Claimed before any await; the attempt itself only starts once the response is sent
    policy.reserve()
    state.jobs[job_id] = job
    try:
        profile = await state.profile_repository.get()
    except Exception:
        state.jobs.pop(job_id, None)
        policy.reserved = False
        raise

    logger.info(f"Queued generation job {job_id} for '{payload.topic}'")
    background_tasks.add_task(policy.run, files, payload.topic, profile)
    return GenerateNoteResponse(job_id=job_id, status=RecoveryState.RUNNING.value)


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job_status(job_id: str, request: Request):
    """Check generation job status."""
    return _job_status(_get_job(request, job_id))


@router.post("/jobs/{job_id}/retry", response_model=JobStatusResponse)
async def retry_job(job_id: str, request: Request, background_tasks: BackgroundTasks):
    """Retry now, skipping the rest of the countdown."""
    job = _get_job(request, job_id)
    if job.policy.state not in OPEN_RECOVERY_STATES or job.policy.retry_outstanding:
        raise HTTPException(status_code=409, detail="Job is not waiting for a retry")
    if _generation_busy(request.app.state):
        raise HTTPException(status_code=409, detail="A generation is already running")
    job.policy.reserve()
    job.progress = None
    job.note_ready = False
    background_tasks.add_task(job.policy.retry_now)
    return _job_status(job)


@router.post("/jobs/{job_id}/countdown", response_model=JobStatusResponse)
async def start_countdown(job_id: str, request: Request):
    """Restart the automatic retry countdown after it ran out."""
    job = _get_job(request, job_id)
    if not job.policy.start_countdown():
        raise HTTPException(status_code=409, detail="Countdown cannot be started")
    return _job_status(job)


@router.post("/jobs/{job_id}/cancel", response_model=JobStatusResponse)
async def cancel_job(job_id: str, request: Request):
    """Abandon the job and discard its temporary note."""
    job = _get_job(request, job_id)
    if not job.policy.cancel():
        raise HTTPException(status_code=409, detail="Job has already finished")
    return _job_status(job)


@router.get("", response_model=List[NoteSummary])
async def list_notes(request: Request, q: Optional[str] = None):
    """List stored notes, newest first."""
    repository = request.app.state.note_repository
    notes = await repository.search(q) if q else await repository.list()
    return [
        NoteSummary(
            id=note.id,
            title=note.title,
            summary=note.summary,
            created_at=note.created_at,
            updated_at=note.updated_at,
        )
        for note in notes
    ]


@router.get("/{note_id}", response_model=NoteResponse)
async def get_note(note_id: str, request: Request):
    note = await request.app.state.note_repository.get(note_id)
    if not note:
        raise HTTPException(status_code=404, detail="Note not found")
    return NoteResponse(note=note.to_dict())


@router.delete("/{note_id}")
async def delete_note(note_id: str, request: Request):
    """Delete a note with its stored files and chat history."""
    if not await request.app.state.note_repository.delete(note_id):
        raise HTTPException(status_code=404, detail="Note not found")
    for session_id, session in list(request.app.state.sessions.items()):
        if session.note.id == note_id:
            del request.app.state.sessions[session_id]
    return {"deleted": note_id}
