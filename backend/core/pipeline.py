"""
Study-guide generation orchestration.

Pipeline Stages:
1. Knowledge graph: extracting -> verifying -> graphing
2. Guide writing: structuring -> writing -> citing
3. Final overwrite with the authoritative guide and its sources
4. Storage of the uploaded originals (best effort, per file)
5. Storage of the note
"""
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from core.config import MIN_GUIDE_CHARS
from core.errors import (
    EmptyOutputError,
    ErrorKind,
    GenerationError,
    GenerationInProgressError,
    InvalidTransitionError,
)
from models.note_models import Note, SourceFile
from models.profile_models import UserProfile
from models.stream_models import (
    FinalDocument,
    GenerationPhase,
    GenerationProgress,
    GraphPayload,
    PhaseUpdate,
)
from services.generation.error_classifier import ErrorClassifier
from services.streaming.client import StreamingClient
from services.streaming.events import fold_events, notify

logger = logging.getLogger(__name__)

PLACEHOLDER_TITLE = "Generating..."


class GenerationStatus(str, Enum):
    IDLE = "IDLE"
    BUILDING_GRAPH = "BUILDING_GRAPH"
    WRITING_GUIDE = "WRITING_GUIDE"
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"


ALLOWED_TRANSITIONS = {
    GenerationStatus.IDLE: {GenerationStatus.BUILDING_GRAPH},
    GenerationStatus.BUILDING_GRAPH: {GenerationStatus.WRITING_GUIDE, GenerationStatus.ERROR},
    GenerationStatus.WRITING_GUIDE: {GenerationStatus.COMPLETE, GenerationStatus.ERROR},
    # retry, or cancel
    GenerationStatus.ERROR: {GenerationStatus.BUILDING_GRAPH, GenerationStatus.IDLE},
    GenerationStatus.COMPLETE: {GenerationStatus.IDLE},
}


@dataclass
class GenerationAttempt:
    """Progress of the attempt currently running against a note."""
    note_id: str
    phase: GenerationPhase = GenerationPhase.METADATA
    stage: str = "extracting"
    last_stage_per_phase: Dict[GenerationPhase, str] = field(default_factory=dict)
    thought: str = ""
    progress_length: int = 0
    error_kind: Optional[ErrorKind] = None
    note_ready: bool = False


class GenerationOrchestrator:
    """Drives the two-phase pipeline and folds its events into a Note."""

    def __init__(
        self,
        client: StreamingClient,
        note_repository=None,
        storage_repository=None,
        classifier: Optional[ErrorClassifier] = None,
        min_guide_chars: int = MIN_GUIDE_CHARS,
    ):
        self.client = client
        self.note_repository = note_repository
        self.storage_repository = storage_repository
        self.classifier = classifier or ErrorClassifier()
        self.min_guide_chars = min_guide_chars

        self.status = GenerationStatus.IDLE
        self.note: Optional[Note] = None
        self.attempt: Optional[GenerationAttempt] = None
        self.error: Optional[GenerationError] = None
        self._discarded: Set[str] = set()

    @property
    def is_generating(self) -> bool:
        return self.status in (GenerationStatus.BUILDING_GRAPH, GenerationStatus.WRITING_GUIDE)

    def _transition(self, new_status: GenerationStatus):
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(f"Cannot move from {self.status.value} to {new_status.value}")
        logger.debug(f"Generation status {self.status.value} -> {new_status.value}")
        self.status = new_status

    async def start_generation(
        self,
        files: List[SourceFile],
        topic: str,
        profile: Optional[UserProfile],
        on_phase_update: Optional[Callable[[GenerationProgress], Any]] = None,
        on_thought: Optional[Callable[[str], Any]] = None,
        on_note_ready: Optional[Callable[[Note], Any]] = None,
        on_started: Optional[Callable[[Note], Any]] = None,
    ) -> Optional[Note]:
        """
        Run one generation attempt and return the finished note.

        Returns None when the note was discarded while the attempt ran.

        Args:
            files: Uploaded originals
            topic: Topic name used for prompts and as the default title
            profile: Learner profile (optional)
            on_phase_update: Called on Phase 1 stage changes and every guide update
            on_thought: Called with the latest reasoning snapshot
            on_note_ready: Called once, when graph data makes the note navigable
            on_started: Called with the temp note before any model call

        Raises:
            GenerationInProgressError: an attempt is already running
            GenerationError: the attempt failed; ``kind`` says whether to retry
        """
        if self.is_generating:
            raise GenerationInProgressError("A generation is already running")
        if self.status == GenerationStatus.COMPLETE:
            self._transition(GenerationStatus.IDLE)
        self._transition(GenerationStatus.BUILDING_GRAPH)

        note = Note(
            id=str(uuid.uuid4()),
            title=PLACEHOLDER_TITLE,
            source_file_names=[f.name for f in files],
        )
        attempt = GenerationAttempt(note_id=note.id)
        self.note = note
        self.attempt = attempt
        self.error = None
        logger.info(f"Starting generation for '{topic}' ({len(files)} files), note {note.id}")
        await notify(on_started, note)

        async def handle_thought(text: str):
            if note.id in self._discarded:
                return
            attempt.thought = text
            await notify(on_thought, text)

        async def handle_phase(update: PhaseUpdate):
            if note.id in self._discarded:
                return
            await self._apply_phase(note, attempt, update, on_phase_update, on_note_ready)

        try:
            final = await fold_events(
                self.client.document_events(files, topic, profile),
                on_thought=handle_thought,
                on_phase=handle_phase,
            )
            if note.id in self._discarded:
                return self._abandon(note)

            markdown = (final.markdown_content or "") if isinstance(final, FinalDocument) else ""
            if len(markdown.strip()) < self.min_guide_chars:
                raise EmptyOutputError(
                    f"Guide too short ({len(markdown.strip())} chars)", code="EMPTY_CONTENT"
                )
        except Exception as e:
            if note.id in self._discarded:
                logger.info(f"Ignoring failure of discarded note {note.id}: {e}")
                return self._abandon(note)
            self._fail(attempt, e)

        if self.status == GenerationStatus.BUILDING_GRAPH:
            self._transition(GenerationStatus.WRITING_GUIDE)
        self._apply_final(note, final)
        attempt.progress_length = len(note.markdown_content)

        await self._persist(note, files)
        self._transition(GenerationStatus.COMPLETE)
        logger.info(f"Generation complete for note {note.id}: {len(note.markdown_content)} chars")
        return note

    async def _apply_phase(
        self,
        note: Note,
        attempt: GenerationAttempt,
        update: PhaseUpdate,
        on_phase_update: Optional[Callable],
        on_note_ready: Optional[Callable],
    ):
        if update.phase == GenerationPhase.METADATA:
            if update.graph is not None:
                self._merge_graph(note, update.graph)
                if not attempt.note_ready:
                    attempt.note_ready = True
                    if self.status == GenerationStatus.BUILDING_GRAPH:
                        self._transition(GenerationStatus.WRITING_GUIDE)
                    await notify(on_note_ready, note)

            if attempt.last_stage_per_phase.get(GenerationPhase.METADATA) == update.stage:
                return
        else:
            if self.status == GenerationStatus.BUILDING_GRAPH:
                self._transition(GenerationStatus.WRITING_GUIDE)
            content = update.markdown_content
            if content is not None:
                if len(content) >= len(note.markdown_content):
                    note.markdown_content = content
                    attempt.progress_length = len(content)
                else:
                    logger.debug(f"Ignoring shorter guide snapshot ({len(content)} < {len(note.markdown_content)})")

        attempt.phase = update.phase
        attempt.stage = update.stage
        attempt.last_stage_per_phase[update.phase] = update.stage
        await notify(on_phase_update, GenerationProgress(
            status=self.status.value,
            phase=update.phase,
            stage=update.stage,
            markdown_progress=attempt.progress_length,
            note_id=note.id,
        ))

    @staticmethod
    def _merge_graph(note: Note, graph: GraphPayload):
        """Partial data never replaces a filled field with an empty one."""
        if graph.title:
            note.title = graph.title
        if graph.summary:
            note.summary = graph.summary
        if graph.eli5_analogy:
            note.eli5_analogy = graph.eli5_analogy
        if graph.pearls:
            note.pearls = list(graph.pearls)
        if graph.graph_data and graph.graph_data.nodes:
            note.graph_data = graph.graph_data

    def _apply_final(self, note: Note, final: FinalDocument):
        self._merge_graph(note, GraphPayload(
            title=final.title,
            summary=final.summary,
            eli5_analogy=final.eli5_analogy,
            pearls=final.pearls,
            graph_data=final.graph_data,
        ))
        # Authoritative overwrite; may be shorter than the streamed text
        note.markdown_content = final.markdown_content
        note.sources = list(final.sources)

    def _fail(self, attempt: GenerationAttempt, error: Exception):
        wrapped = self.classifier.wrap(error)
        attempt.error_kind = wrapped.kind
        self.error = wrapped
        if self.is_generating:
            self._transition(GenerationStatus.ERROR)
        if wrapped.retryable:
            logger.warning(f"Generation produced empty output for note {attempt.note_id}: {error}")
        else:
            logger.error(f"Generation failed for note {attempt.note_id}: {error}")
        raise wrapped from error

    async def _persist(self, note: Note, files: List[SourceFile]):
        if self.storage_repository is not None:
            for source in files:
                try:
                    file_id = await self.storage_repository.upload(source, related_note_id=note.id)
                    note.source_file_ids.append(file_id)
                except Exception as e:
                    logger.warning(
                        f"{ErrorKind.PARTIAL_UPLOAD_FAILURE.value}: could not store {source.name}: {e}"
                    )

        if self.note_repository is not None:
            try:
                await self.note_repository.save(note)
            except Exception as e:
                logger.error(f"{ErrorKind.PERSISTENCE_FAILURE.value}: could not save note {note.id}: {e}")

    def discard(self, note_id: str):
        """Invalidate a temp note; anything still arriving for it is ignored."""
        self._discarded.add(note_id)
        if self.note is not None and self.note.id == note_id:
            if self.status == GenerationStatus.ERROR:
                self._transition(GenerationStatus.IDLE)
            self.note = None
            self.attempt = None
            self.error = None

    def _abandon(self, note: Note) -> None:
        """Finish an attempt whose note was discarded while it ran."""
        if self.is_generating:
            self.status = GenerationStatus.IDLE
        logger.info(f"Discarded note {note.id} resolved after cancellation; result dropped")
        return None
