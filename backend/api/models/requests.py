"""
Pydantic request models for API endpoints.
"""
from pydantic import BaseModel, Field
from typing import List, Optional


class UploadedFile(BaseModel):
    """A source document sent inline."""
    name: str = Field(..., description="Original file name")
    mime_type: str = Field(default="text/plain", description="MIME type of the file")
    data_base64: str = Field(..., description="File contents, base64 encoded")


class GenerateNoteRequest(BaseModel):
    """Request model for study guide generation."""
    topic: str = Field(..., min_length=1, description="Topic of the study guide")
    files: List[UploadedFile] = Field(default_factory=list, description="Source material")


class ProfileRequest(BaseModel):
    name: str = ""
    discipline: str = ""
    level: str = ""
    teaching_style: str = ""
    custom_teaching_style: str = ""
    exam_goal: str = ""
    custom_exam_goal: str = ""
    specialties: List[str] = Field(default_factory=list)
    learning_goals: str = ""


class CreateSessionRequest(BaseModel):
    """Open a tutor session over a stored note."""
    note_id: str = Field(..., description="Note ID")
    selection: Optional[str] = Field(default=None, description="Highlighted text; opens in explain mode")


class ChatMessageRequest(BaseModel):
    message: str = Field(..., description="User message")


class ModeRequest(BaseModel):
    mode: str = Field(..., description="tutor, quiz, explain, compare or clinical")


class TopicRequest(BaseModel):
    topic_id: str = Field(..., description="Quiz topic ID")


class AnswerRequest(BaseModel):
    answer: str = Field(..., min_length=1, max_length=1, description="Option label")
