"""
Tutor chat API routes.

Each session lives in memory for the life of the process; its messages
are persisted per note so a new session resumes the conversation.
"""
import uuid

from fastapi import APIRouter, HTTPException, Request

from api.models.requests import AnswerRequest, ChatMessageRequest, CreateSessionRequest, ModeRequest, TopicRequest
from api.models.responses import ModeChangeResponse, SessionResponse
from core.errors import QuizValidationError, SessionBusyError
from models.chat_models import ConversationMode
from services.conversation.session import ConversationSession

router = APIRouter()


def session_response(session_id: str, session: ConversationSession) -> SessionResponse:
    return SessionResponse(
        session_id=session_id,
        note_id=session.note.id,
        mode=session.mode.value,
        is_sending=session.is_sending,
        awaiting_topic=session.awaiting_topic,
        selected_topic_id=session.selected_topic_id,
        quiz_topics=[{"id": t.id, "name": t.name} for t in session.quiz_topics],
        simulation_active=session.simulation.active,
        simulation_locked=session.simulation.locked,
        notice=session.notice,
        quiz_actions_message_id=session.quiz_actions_target(),
        messages=[message.to_dict() for message in session.visible_messages],
    )


def _get_session(request: Request, session_id: str) -> ConversationSession:
    session = request.app.state.sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


async def _run(session_id: str, session: ConversationSession, operation):
    """Await a session operation, mapping caller errors to HTTP errors."""
    try:
        await operation
    except SessionBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except QuizValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return session_response(session_id, session)


@router.post("/sessions", response_model=SessionResponse)
async def create_session(payload: CreateSessionRequest, request: Request):
    """Open a tutor session over a stored note."""
    state = request.app.state
    note = await state.note_repository.get(payload.note_id)
    if not note:
        raise HTTPException(status_code=404, detail="Note not found")
    profile = await state.profile_repository.get()

    session = ConversationSession(
        state.client,
        note,
        profile=profile,
        chat_repository=state.chat_repository,
        initial_selection=payload.selection,
    )
    await session.load()
    session_id = f"session_{uuid.uuid4().hex[:12]}"
    state.sessions[session_id] = session
    return session_response(session_id, session)


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str, request: Request):
    return session_response(session_id, _get_session(request, session_id))


@router.post("/sessions/{session_id}/messages", response_model=SessionResponse)
async def send_message(session_id: str, payload: ChatMessageRequest, request: Request):
    session = _get_session(request, session_id)
    return await _run(session_id, session, session.send(payload.message))


@router.post("/sessions/{session_id}/messages/{message_id}/retry", response_model=SessionResponse)
async def retry_message(session_id: str, message_id: str, request: Request):
    """Replay the turn behind a failed reply."""
    session = _get_session(request, session_id)
    return await _run(session_id, session, session.retry_message(message_id))


@router.post("/sessions/{session_id}/mode", response_model=ModeChangeResponse)
async def change_mode(session_id: str, payload: ModeRequest, request: Request):
    """Switch modes; refused with a notice while a simulation is running."""
    session = _get_session(request, session_id)
    try:
        mode = ConversationMode(payload.mode)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown mode: {payload.mode}")
    try:
        accepted = await session.switch_mode(mode)
    except SessionBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return ModeChangeResponse(accepted=accepted, session=session_response(session_id, session))


@router.post("/sessions/{session_id}/topic", response_model=SessionResponse)
async def select_topic(session_id: str, payload: TopicRequest, request: Request):
    session = _get_session(request, session_id)
    return await _run(session_id, session, session.select_topic(payload.topic_id))


@router.post("/sessions/{session_id}/quiz/{message_id}/answer", response_model=SessionResponse)
async def select_answer(session_id: str, message_id: str, payload: AnswerRequest, request: Request):
    """Record a choice without submitting it."""
    session = _get_session(request, session_id)
    if not session.select_answer(message_id, payload.answer):
        raise HTTPException(status_code=400, detail="Answer cannot be selected for this message")
    return session_response(session_id, session)


@router.post("/sessions/{session_id}/quiz/{message_id}/submit", response_model=SessionResponse)
async def submit_answer(session_id: str, message_id: str, request: Request):
    session = _get_session(request, session_id)
    return await _run(session_id, session, session.submit_quiz(message_id))


@router.post("/sessions/{session_id}/quiz/{message_id}/idk", response_model=SessionResponse)
async def dont_know(session_id: str, message_id: str, request: Request):
    session = _get_session(request, session_id)
    return await _run(session_id, session, session.idk(message_id))


@router.post("/sessions/{session_id}/quiz/next", response_model=SessionResponse)
async def next_question(session_id: str, request: Request):
    session = _get_session(request, session_id)
    return await _run(session_id, session, session.next_question())


@router.post("/sessions/{session_id}/quiz/change-topic", response_model=SessionResponse)
async def change_topic(session_id: str, request: Request):
    session = _get_session(request, session_id)
    return await _run(session_id, session, session.change_topic())


@router.post("/sessions/{session_id}/quiz/exit", response_model=SessionResponse)
async def exit_quiz(session_id: str, request: Request):
    session = _get_session(request, session_id)
    return await _run(session_id, session, session.exit_quiz())


@router.post("/sessions/{session_id}/simulation/finish", response_model=SessionResponse)
async def finish_simulation(session_id: str, request: Request):
    """Evaluate the case and return to tutor mode."""
    session = _get_session(request, session_id)
    return await _run(session_id, session, session.finish_simulation())


@router.post("/sessions/{session_id}/simulation/cancel", response_model=SessionResponse)
async def cancel_simulation(session_id: str, request: Request):
    session = _get_session(request, session_id)
    return await _run(session_id, session, session.cancel_simulation())


@router.post("/sessions/{session_id}/reset", response_model=SessionResponse)
async def reset_session(session_id: str, request: Request):
    """Clear the conversation and its stored history."""
    session = _get_session(request, session_id)
    return await _run(session_id, session, session.reset())
