"""
Pydantic response models for API endpoints.
"""
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class GenerateNoteResponse(BaseModel):
    """Response model for generation start."""
    job_id: str = Field(..., description="Job ID for tracking")
    status: str = Field(..., description="Recovery state of the job")


class JobStatusResponse(BaseModel):
    """Progress of a generation job."""
    job_id: str
    status: str
    generation_status: str
    phase: Optional[str] = None
    stage: Optional[str] = None
    markdown_progress: int = 0
    thought: str = ""
    note_id: Optional[str] = None
    note_ready: bool = False
    attempts: int = 0
    countdown_remaining: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None


class NoteSummary(BaseModel):
    id: str
    title: str
    summary: str = ""
    created_at: int
    updated_at: int


class NoteResponse(BaseModel):
    """Full stored note."""
    note: Dict[str, Any]


class ProfileResponse(BaseModel):
    profile: Optional[Dict[str, Any]] = None


class SessionResponse(BaseModel):
    """Visible state of a tutor session."""
    session_id: str
    note_id: str
    mode: str
    is_sending: bool
    awaiting_topic: bool
    selected_topic_id: Optional[str] = None
    quiz_topics: List[Dict[str, str]] = []
    simulation_active: bool = False
    simulation_locked: bool = False
    notice: Optional[str] = None
    quiz_actions_message_id: Optional[str] = None
    messages: List[Dict[str, Any]] = []


class ModeChangeResponse(BaseModel):
    accepted: bool
    session: SessionResponse
