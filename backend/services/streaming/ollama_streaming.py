"""
StreamingClient implementation backed by a local Ollama server.

Document generation runs in two phases:
1. Knowledge graph (metadata): extracting -> verifying -> graphing
2. Guide writing (markdown): structuring -> writing -> citing
"""
import asyncio
import base64
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from core.backoff import is_transient_error
from core.config import (
    CHAT_HISTORY_WINDOW,
    CHAT_MAX_TOKENS,
    CHAT_MODEL,
    CHAT_TEMPERATURE,
    CITING_STAGE_CHARS,
    CONTEXT_CHAR_LIMIT,
    FEEDBACK_TEMPERATURE,
    GENERATION_MODEL,
    GRAPH_MAX_TOKENS,
    GRAPH_TEMPERATURE,
    GUIDE_MAX_TOKENS,
    GUIDE_TEMPERATURE,
    LLM_MAX_RETRIES,
    LLM_RETRY_BASE_DELAY,
    MAX_CONTINUATIONS,
    MAX_GUIDE_CHARS,
    QUIZ_TEMPERATURE,
    WRITING_STAGE_CHARS,
)
from core.errors import EmptyOutputError
from core.ollama_client import ChatChunk, OllamaClient
from core.prompt_manager import PromptManager
from models.chat_models import ChatMessage, ConversationMode, QuizQuestion
from models.note_models import KnowledgeNode, SourceFile
from models.profile_models import UserProfile
from models.stream_models import (
    EventType,
    FinalDocument,
    GenerationPhase,
    GraphPayload,
    PHASE_STAGES,
    PhaseUpdate,
    StreamEvent,
)
from services.conversation.personas import build_profile_context, build_system_instruction
from services.conversation.quiz import format_quiz_feedback
from services.streaming.client import StreamingClient
from services.streaming.parsing import build_graph_payload, extract_sources, parse_json_object
from services.streaming.postprocess import (
    detect_truncation,
    find_last_section,
    linkify_clinical_terms,
    remove_redundant_sections,
)

logger = logging.getLogger(__name__)

VERIFY_KEYWORDS = ("verify", "verifying", "search", "cross-reference", "looking up", "check")
GRAPH_KEYWORDS = ("graph", "node", "link", "json")

SOURCE_TEXT_LIMIT = 60000
MARKDOWN_EMIT_STEP = 200
CONTINUATION_TAIL_CHARS = 3000


def graph_stage_for(current: str, thought: str, content: str) -> str:
    """Knowledge-graph sub-stage implied by the latest thought and content."""
    stages = PHASE_STAGES[GenerationPhase.METADATA]
    lowered = thought.lower()
    target = current
    if any(keyword in lowered for keyword in VERIFY_KEYWORDS):
        target = "verifying"
    if any(keyword in lowered for keyword in GRAPH_KEYWORDS) or '"graphNodes"' in content:
        target = "graphing"
    return max(current, target, key=stages.index)


def guide_stage_for(length: int) -> str:
    if length > CITING_STAGE_CHARS:
        return "citing"
    if length > WRITING_STAGE_CHARS:
        return "writing"
    return "structuring"


class OllamaStreamingClient(StreamingClient):
    """Generates guides and tutor replies with Ollama chat models."""

    def __init__(
        self,
        ollama: OllamaClient,
        prompts: Optional[PromptManager] = None,
        generation_model: str = GENERATION_MODEL,
        chat_model: str = CHAT_MODEL,
    ):
        super().__init__()
        self.ollama = ollama
        self.prompts = prompts or PromptManager()
        self.generation_model = generation_model
        self.chat_model = chat_model

    async def _stream(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float,
        max_tokens: int,
        response_format: Optional[Any] = None,
    ) -> AsyncIterator[ChatChunk]:
        """Stream a completion, retrying transient failures that happen before the first chunk."""
        for attempt in range(LLM_MAX_RETRIES):
            received = False
            try:
                async for chunk in self.ollama.stream_chat(
                    model, messages, temperature, max_tokens, response_format=response_format
                ):
                    received = True
                    yield chunk
                return
            except Exception as e:
                if received or not is_transient_error(e) or attempt == LLM_MAX_RETRIES - 1:
                    raise
                delay = LLM_RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning(f"Transient model error, retrying in {delay}s: {e}")
                await asyncio.sleep(delay)

    def _prepare_sources(self, files: List[SourceFile]) -> Tuple[str, List[str]]:
        """Readable text of the uploads plus base64 images for vision models."""
        sections = []
        images = []
        for source in files:
            if source.is_text:
                sections.append(f"--- {source.name} ---\n{source.data.decode('utf-8', errors='replace')}")
            elif source.is_image:
                images.append(base64.b64encode(source.data).decode("ascii"))
                sections.append(f"--- {source.name} (image attached) ---")
            else:
                sections.append(f"--- {source.name} ({source.mime_type}, binary content not extracted) ---")
        text = "\n\n".join(sections)
        if len(text) > SOURCE_TEXT_LIMIT:
            logger.warning(f"Source material truncated from {len(text)} to {SOURCE_TEXT_LIMIT} chars")
            text = text[:SOURCE_TEXT_LIMIT]
        return text, images

    @staticmethod
    def _user_message(content: str, images: List[str]) -> Dict[str, Any]:
        message: Dict[str, Any] = {"role": "user", "content": content}
        if images:
            message["images"] = images
        return message

    async def document_events(
        self,
        files: List[SourceFile],
        topic: str,
        profile: Optional[UserProfile],
    ) -> AsyncIterator[StreamEvent]:
        source_text, images = self._prepare_sources(files)
        profile_context = build_profile_context(profile)

        graph = None
        async for event in self._graph_phase(topic, profile_context, source_text, images):
            if event.type == EventType.PHASE and event.payload.graph is not None:
                graph = event.payload.graph
            yield event

        markdown = ""
        async for event in self._guide_phase(graph, topic, profile_context, source_text, images):
            if event.type == EventType.PHASE and event.payload.markdown_content is not None:
                markdown = event.payload.markdown_content
            yield event

        nodes = graph.graph_data.nodes if graph.graph_data else []
        final = linkify_clinical_terms(remove_redundant_sections(markdown), nodes)
        logger.info(f"Guide for '{topic}' finished: {len(final)} chars, {len(nodes)} concepts")

        yield StreamEvent.complete(FinalDocument(
            markdown_content=final,
            sources=extract_sources(final),
            title=graph.title,
            summary=graph.summary,
            eli5_analogy=graph.eli5_analogy,
            pearls=graph.pearls,
            graph_data=graph.graph_data,
        ))

    async def _graph_phase(
        self,
        topic: str,
        profile_context: str,
        source_text: str,
        images: List[str],
    ) -> AsyncIterator[StreamEvent]:
        stages = PHASE_STAGES[GenerationPhase.METADATA]
        stage = "extracting"
        yield StreamEvent.phase(PhaseUpdate(GenerationPhase.METADATA, stage))

        messages = [
            {"role": "system", "content": self.prompts.render(
                "graph_extraction", topic=topic, profile_context=profile_context
            )},
            self._user_message(f"SOURCE MATERIAL:\n{source_text}", images),
        ]

        thought = ""
        raw = ""
        async for chunk in self._stream(
            self.generation_model, messages, GRAPH_TEMPERATURE, GRAPH_MAX_TOKENS, response_format="json"
        ):
            if chunk.thinking:
                thought += chunk.thinking
                yield StreamEvent.thought(thought)
            raw += chunk.content

            next_stage = graph_stage_for(stage, chunk.thinking, raw)
            # Never skip a stage: emit every stage up to the detected one
            while stages.index(next_stage) > stages.index(stage):
                stage = stages[stages.index(stage) + 1]
                yield StreamEvent.phase(PhaseUpdate(GenerationPhase.METADATA, stage))

        try:
            graph = build_graph_payload(parse_json_object(raw), topic)
        except ValueError as e:
            raise ValueError(f"Knowledge graph phase failed: {e}") from e

        logger.info(f"Knowledge graph for '{topic}': {len(graph.graph_data.nodes)} nodes, "
                    f"{len(graph.graph_data.links)} links")
        while stage != "graphing":
            stage = stages[stages.index(stage) + 1]
            yield StreamEvent.phase(PhaseUpdate(GenerationPhase.METADATA, stage))
        yield StreamEvent.phase(PhaseUpdate(GenerationPhase.METADATA, "graphing", graph=graph))

    async def _guide_phase(
        self,
        graph: GraphPayload,
        topic: str,
        profile_context: str,
        source_text: str,
        images: List[str],
    ) -> AsyncIterator[StreamEvent]:
        stage = "structuring"
        yield StreamEvent.phase(PhaseUpdate(GenerationPhase.MARKDOWN, stage))

        outline = "\n".join(
            f"- {node.label}" + (f": {node.description}" if node.description else "")
            for node in graph.graph_data.nodes
        )
        title = graph.title or topic
        messages = [self._user_message(
            self.prompts.render(
                "guide_writing",
                topic=title,
                profile_context=profile_context,
                concept_outline=outline,
                source_text=source_text,
            ),
            images,
        )]

        thought = ""
        markdown = ""
        chunks = 0
        last_emitted = 0
        async for chunk in self._stream(self.generation_model, messages, GUIDE_TEMPERATURE, GUIDE_MAX_TOKENS):
            if chunk.thinking:
                thought += chunk.thinking
                yield StreamEvent.thought(thought)
            if not chunk.content:
                continue
            chunks += 1
            markdown += chunk.content
            next_stage = guide_stage_for(len(markdown))
            if next_stage != stage or len(markdown) - last_emitted >= MARKDOWN_EMIT_STEP:
                stage = next_stage
                last_emitted = len(markdown)
                yield StreamEvent.phase(PhaseUpdate(GenerationPhase.MARKDOWN, stage, markdown_content=markdown))
            if len(markdown) >= MAX_GUIDE_CHARS:
                logger.warning(f"Guide reached {MAX_GUIDE_CHARS} chars, stopping stream")
                break

        if chunks == 0:
            raise EmptyOutputError("Guide stream returned no content", code="EMPTY_STREAM")
        if last_emitted != len(markdown):
            yield StreamEvent.phase(PhaseUpdate(GenerationPhase.MARKDOWN, stage, markdown_content=markdown))

        continuations = 0
        while (
            continuations < MAX_CONTINUATIONS
            and len(markdown) < MAX_GUIDE_CHARS
            and detect_truncation(markdown)
        ):
            continuations += 1
            logger.info(f"Guide looks truncated, continuation {continuations}/{MAX_CONTINUATIONS}")
            prompt = self.prompts.render(
                "guide_continuation",
                topic=title,
                last_section=find_last_section(markdown) or "unknown",
                tail=markdown[-CONTINUATION_TAIL_CHARS:],
            )
            added = ""
            async for chunk in self._stream(
                self.generation_model, [{"role": "user", "content": prompt}], GUIDE_TEMPERATURE, GUIDE_MAX_TOKENS
            ):
                if chunk.content:
                    added += chunk.content
            if not added.strip():
                break
            markdown = markdown.rstrip() + "\n" + added.lstrip()
            stage = guide_stage_for(len(markdown))
            yield StreamEvent.phase(PhaseUpdate(GenerationPhase.MARKDOWN, stage, markdown_content=markdown))

    def _history_messages(self, history: List[ChatMessage]) -> List[Dict[str, Any]]:
        usable = [
            m for m in history
            if not m.is_thinking and not m.is_error and m.text.strip()
        ][-CHAT_HISTORY_WINDOW:]
        return [
            {"role": "assistant" if m.role == "model" else "user", "content": m.text}
            for m in usable
        ]

    async def _stream_reply(
        self,
        messages: List[Dict[str, Any]],
        temperature: float,
    ) -> AsyncIterator[StreamEvent]:
        thought = ""
        text = ""
        async for chunk in self._stream(self.chat_model, messages, temperature, CHAT_MAX_TOKENS):
            if chunk.thinking:
                thought += chunk.thinking
                yield StreamEvent.thought(thought)
            if chunk.content:
                text += chunk.content
                yield StreamEvent.content(text)
        if not text.strip():
            raise EmptyOutputError("Model returned an empty reply", code="EMPTY_STREAM")
        yield StreamEvent.complete(text)

    async def chat_events(
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
        system = system_instruction or build_system_instruction(
            profile, mode, content_context, graph_nodes, topic_scope, CONTEXT_CHAR_LIMIT
        )
        messages = [{"role": "system", "content": system}]
        messages += self._history_messages(history)
        messages.append({"role": "user", "content": message})

        temperature = QUIZ_TEMPERATURE if mode == ConversationMode.QUIZ else CHAT_TEMPERATURE
        async for event in self._stream_reply(messages, temperature):
            yield event

    @staticmethod
    def _question_block(quiz: QuizQuestion) -> str:
        options = "\n".join(f"{o.label}) {o.text}" for o in quiz.options)
        return f"QUESTION STEM:\n{quiz.question}\n\nANSWER CHOICES:\n{options}"

    async def quiz_answer_events(
        self,
        quiz: QuizQuestion,
        answer: str,
        context: str,
        profile: Optional[UserProfile],
    ) -> AsyncIterator[StreamEvent]:
        profile = profile or UserProfile()
        system = self.prompts.render("quiz_feedback", exam_goal=profile.effective_exam_goal)
        prompt = (
            f"{self._question_block(quiz)}\n\n"
            f"THEIR SELECTION: {answer}\n\n"
            f"STUDY GUIDE EXCERPT:\n{context[:CONTEXT_CHAR_LIMIT]}"
        )
        messages = [{"role": "system", "content": system}, {"role": "user", "content": prompt}]

        thought = ""
        raw = ""
        async for chunk in self._stream(
            self.chat_model, messages, FEEDBACK_TEMPERATURE, CHAT_MAX_TOKENS, response_format="json"
        ):
            if chunk.thinking:
                thought += chunk.thinking
                yield StreamEvent.thought(thought)
            raw += chunk.content

        data = parse_json_object(raw)
        if not data.get("verdict") or not data.get("analysis"):
            raise ValueError("Quiz feedback reply was missing its verdict or analysis")

        feedback = format_quiz_feedback(quiz, answer, data, profile)
        yield StreamEvent.content(feedback.text)
        yield StreamEvent.complete(feedback)

    async def idk_events(
        self,
        quiz: QuizQuestion,
        context: str,
        profile: Optional[UserProfile],
    ) -> AsyncIterator[StreamEvent]:
        profile = profile or UserProfile()
        system = self.prompts.render(
            "idk_explanation",
            student_name=profile.name or "The student",
            exam_goal=profile.effective_exam_goal,
        )
        prompt = f"{self._question_block(quiz)}\n\nSTUDY GUIDE EXCERPT:\n{context[:CONTEXT_CHAR_LIMIT]}"
        messages = [{"role": "system", "content": system}, {"role": "user", "content": prompt}]
        async for event in self._stream_reply(messages, CHAT_TEMPERATURE):
            yield event
