"""
Contract between the orchestration layer and a language-model backend.

Every model call is an async iterator of StreamEvent. The callback-style
methods below fold those iterators for callers that only want the result.
"""
from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable, Dict, List, Optional

from models.chat_models import ChatMessage, ConversationMode, QuizFeedback, QuizQuestion, QuizTopic
from models.note_models import KnowledgeNode, Note, SourceFile
from models.profile_models import UserProfile
from models.stream_models import FinalDocument, PhaseUpdate, StreamEvent
from services.conversation import personas
from services.streaming import parsing
from services.streaming.events import fold_events


class StreamingClient(ABC):
    """Produces phased generation and chat results as tagged event streams."""

    def __init__(self):
        self._topics_cache: Dict[str, List[QuizTopic]] = {}

    @abstractmethod
    def document_events(
        self,
        files: List[SourceFile],
        topic: str,
        profile: Optional[UserProfile],
    ) -> AsyncIterator[StreamEvent]:
        """PHASE events for both phases, THOUGHT snapshots, then COMPLETE(FinalDocument)."""

    @abstractmethod
    def chat_events(
        self,
        history: List[ChatMessage],
        message: str,
        content_context: str,
        profile: Optional[UserProfile],
        graph_nodes: List[KnowledgeNode],
        mode: ConversationMode,
        topic_scope: Optional[str] = None,
        system_instruction: Optional[str] = None,
    ) -> AsyncIterator[StreamEvent]:
        """THOUGHT and CONTENT snapshots, then COMPLETE(full reply text)."""

    @abstractmethod
    def quiz_answer_events(
        self,
        quiz: QuizQuestion,
        answer: str,
        context: str,
        profile: Optional[UserProfile],
    ) -> AsyncIterator[StreamEvent]:
        """Evaluation of a submitted answer, ending in COMPLETE(QuizFeedback)."""

    @abstractmethod
    def idk_events(
        self,
        quiz: QuizQuestion,
        context: str,
        profile: Optional[UserProfile],
    ) -> AsyncIterator[StreamEvent]:
        """Explanation-only reply for an "I don't know", ending in COMPLETE(text)."""

    async def generate_document(
        self,
        files: List[SourceFile],
        topic: str,
        profile: Optional[UserProfile],
        on_phase_update: Optional[Callable[[PhaseUpdate], None]] = None,
        on_thought: Optional[Callable[[str], None]] = None,
    ) -> FinalDocument:
        return await fold_events(
            self.document_events(files, topic, profile),
            on_thought=on_thought,
            on_phase=on_phase_update,
        )

    async def stream_chat_response(
        self,
        history: List[ChatMessage],
        message: str,
        content_context: str,
        profile: Optional[UserProfile],
        graph_nodes: List[KnowledgeNode],
        mode: ConversationMode,
        topic_scope: Optional[str] = None,
        on_thought: Optional[Callable[[str], None]] = None,
        on_chunk: Optional[Callable[[str], None]] = None,
        system_instruction: Optional[str] = None,
    ) -> str:
        return await fold_events(
            self.chat_events(
                history, message, content_context, profile, graph_nodes, mode,
                topic_scope=topic_scope, system_instruction=system_instruction,
            ),
            on_thought=on_thought,
            on_content=on_chunk,
        )

    async def submit_quiz_answer(
        self,
        quiz: QuizQuestion,
        answer: str,
        context: str,
        profile: Optional[UserProfile],
        on_thought: Optional[Callable[[str], None]] = None,
        on_chunk: Optional[Callable[[str], None]] = None,
    ) -> QuizFeedback:
        return await fold_events(
            self.quiz_answer_events(quiz, answer, context, profile),
            on_thought=on_thought,
            on_content=on_chunk,
        )

    async def handle_idk_response(
        self,
        quiz: QuizQuestion,
        context: str,
        profile: Optional[UserProfile],
        on_thought: Optional[Callable[[str], None]] = None,
        on_chunk: Optional[Callable[[str], None]] = None,
    ) -> str:
        return await fold_events(
            self.idk_events(quiz, context, profile),
            on_thought=on_thought,
            on_content=on_chunk,
        )

    def extract_topics_from_content(self, content: str) -> List[QuizTopic]:
        """Quiz topics for a guide, cached per content."""
        cache_key = f"{len(content)}-{content[:100]}"
        if cache_key not in self._topics_cache:
            self._topics_cache[cache_key] = parsing.extract_topics_from_content(content)
        return self._topics_cache[cache_key]

    def parse_quiz_from_response(self, text: str) -> Optional[QuizQuestion]:
        return parsing.parse_quiz_from_response(text)

    def build_clinical_simulation_persona(self, profile: Optional[UserProfile], note: Note) -> str:
        return personas.build_clinical_simulation_persona(profile, note.title, note.markdown_content)

    def build_clinical_evaluation_persona(self, profile: Optional[UserProfile]) -> str:
        return personas.build_clinical_evaluation_persona(profile)
