"""
Tagged events emitted by streaming calls, and the payloads they carry.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

from models.note_models import ClinicalPearl, GraphData, Source


class EventType(str, Enum):
    THOUGHT = "thought"
    PHASE = "phase"
    CONTENT = "content"
    COMPLETE = "complete"
    ERROR = "error"


class GenerationPhase(str, Enum):
    METADATA = "metadata"  # knowledge graph extraction
    MARKDOWN = "markdown"  # guide writing


PHASE_STAGES = {
    GenerationPhase.METADATA: ("extracting", "verifying", "graphing"),
    GenerationPhase.MARKDOWN: ("structuring", "writing", "citing"),
}


@dataclass
class StreamEvent:
    """One item of a streamed call.

    THOUGHT and CONTENT payloads are cumulative text snapshots, PHASE carries a
    PhaseUpdate, COMPLETE the call's result and ERROR the exception.
    """
    type: EventType
    payload: Any = None

    @classmethod
    def thought(cls, text: str) -> "StreamEvent":
        return cls(EventType.THOUGHT, text)

    @classmethod
    def content(cls, text: str) -> "StreamEvent":
        return cls(EventType.CONTENT, text)

    @classmethod
    def phase(cls, update: "PhaseUpdate") -> "StreamEvent":
        return cls(EventType.PHASE, update)

    @classmethod
    def complete(cls, result: Any) -> "StreamEvent":
        return cls(EventType.COMPLETE, result)

    @classmethod
    def error(cls, exc: BaseException) -> "StreamEvent":
        return cls(EventType.ERROR, exc)


@dataclass
class GraphPayload:
    """Partial note data produced by the knowledge-graph phase."""
    title: str = ""
    summary: str = ""
    eli5_analogy: str = ""
    pearls: List[ClinicalPearl] = field(default_factory=list)
    graph_data: Optional[GraphData] = None


@dataclass
class PhaseUpdate:
    phase: GenerationPhase
    stage: str
    graph: Optional[GraphPayload] = None
    markdown_content: Optional[str] = None


@dataclass
class FinalDocument:
    """Terminal result of a document generation."""
    markdown_content: str
    sources: List[Source] = field(default_factory=list)
    title: str = ""
    summary: str = ""
    eli5_analogy: str = ""
    pearls: List[ClinicalPearl] = field(default_factory=list)
    graph_data: Optional[GraphData] = None


@dataclass
class GenerationProgress:
    """Snapshot handed to the host on every visible change."""
    status: str
    phase: GenerationPhase
    stage: str
    markdown_progress: int = 0
    note_id: Optional[str] = None
