"""
Tests for the Ollama-backed streaming client against a mocked HTTP transport.
"""
import json

import httpx
import pytest

from core.errors import EmptyOutputError, OllamaError
from core.ollama_client import OllamaClient
from models.chat_models import ChatMessage, ConversationMode, QuizFeedback, QuizOption, QuizQuestion
from models.note_models import SourceFile
from models.stream_models import EventType, FinalDocument, GenerationPhase
from services.streaming import ollama_streaming
from services.streaming.events import fold_events
from services.streaming.ollama_streaming import OllamaStreamingClient, graph_stage_for, guide_stage_for

from conftest import GUIDE_MARKDOWN

GRAPH_JSON = json.dumps({
    "title": "Cardiac Output",
    "summary": "Determinants of cardiac output.",
    "eli5Analogy": "A pump.",
    "graphNodes": [
        {"id": "preload", "label": "Preload", "group": 1},
        {"id": "afterload", "label": "Afterload", "group": 1},
    ],
    "graphLinks": [{"source": "preload", "target": "afterload", "relationship": "balances"}],
    "pearls": [],
})

QUIZ = QuizQuestion(
    id="q1",
    topic="Preload",
    question="Which change increases preload?",
    options=[QuizOption("A", "Venodilation"), QuizOption("B", "IV fluid bolus")],
)


def ndjson(contents=(), thoughts=()):
    """Encode an Ollama chat stream: thinking deltas, content deltas, then done."""
    lines = [{"message": {"role": "assistant", "content": "", "thinking": t}, "done": False} for t in thoughts]
    lines += [{"message": {"role": "assistant", "content": c}, "done": False} for c in contents]
    lines.append({"message": {"role": "assistant", "content": ""}, "done": True, "done_reason": "stop"})
    return ("\n".join(json.dumps(line) for line in lines) + "\n").encode()


def split(text, size=80):
    return [text[i:i + size] for i in range(0, len(text), size)]


def make_client(responses, requests_seen=None):
    """Streaming client whose transport answers each request with the next queued response."""
    queue = list(responses)

    def handler(request):
        if requests_seen is not None:
            requests_seen.append(json.loads(request.content))
        response = queue.pop(0)
        if isinstance(response, httpx.Response):
            return response
        return httpx.Response(200, content=response)

    ollama = OllamaClient(base_url="http://ollama.test", transport=httpx.MockTransport(handler))
    return OllamaStreamingClient(ollama, generation_model="test-model", chat_model="test-chat")


async def collect(events):
    collected = []
    async for event in events:
        collected.append(event)
    return collected


class TestStageDetection:
    """Test stage inference from streamed output."""

    def test_graph_stage_only_moves_forward(self):
        assert graph_stage_for("extracting", "Let me verify this", "") == "verifying"
        assert graph_stage_for("extracting", "", '{"graphNodes": [') == "graphing"
        assert graph_stage_for("graphing", "verify again", "") == "graphing"
        assert graph_stage_for("extracting", "reading", "") == "extracting"

    def test_guide_stage_thresholds(self):
        assert guide_stage_for(100) == "structuring"
        assert guide_stage_for(501) == "writing"
        assert guide_stage_for(30001) == "citing"


class TestDocumentEvents:
    """Test the two-phase document stream."""

    @pytest.mark.asyncio
    async def test_full_generation(self, source_files, profile):
        seen = []
        client = make_client([
            ndjson(contents=split(GRAPH_JSON), thoughts=["Let me verify ", "the graph nodes"]),
            ndjson(contents=split(GUIDE_MARKDOWN)),
        ], requests_seen=seen)

        events = await collect(client.document_events(source_files, "Cardiology", profile))

        phases = [e.payload for e in events if e.type == EventType.PHASE]
        metadata = [p.stage for p in phases if p.phase == GenerationPhase.METADATA]
        assert metadata == ["extracting", "verifying", "graphing", "graphing"]
        assert phases[3].graph.title == "Cardiac Output"
        assert [p.stage for p in phases if p.phase == GenerationPhase.MARKDOWN][0] == "structuring"
        assert phases[-1].markdown_content == GUIDE_MARKDOWN

        thoughts = [e.payload for e in events if e.type == EventType.THOUGHT]
        assert thoughts == ["Let me verify ", "Let me verify the graph nodes"]

        final = events[-1]
        assert final.type == EventType.COMPLETE
        assert isinstance(final.payload, FinalDocument)
        assert "[Preload](node:preload) is the end-diastolic" in final.payload.markdown_content
        assert len(final.payload.graph_data.nodes) == 2

        assert seen[0]["format"] == "json"
        assert seen[0]["model"] == "test-model"
        assert "Preload and afterload notes." in seen[0]["messages"][1]["content"]
        assert "format" not in seen[1]

    @pytest.mark.asyncio
    async def test_every_graph_stage_reported_without_cues(self, source_files, profile):
        quiet_graph = GRAPH_JSON.replace('"graphNodes"', '"nodes"')
        client = make_client([ndjson(contents=[quiet_graph]), ndjson(contents=split(GUIDE_MARKDOWN))])

        events = await collect(client.document_events(source_files, "Cardiology", profile))

        metadata = [e.payload for e in events
                    if e.type == EventType.PHASE and e.payload.phase == GenerationPhase.METADATA]
        assert [p.stage for p in metadata] == ["extracting", "verifying", "graphing", "graphing"]
        assert metadata[-1].graph.title == "Cardiac Output"

    @pytest.mark.asyncio
    async def test_empty_guide_stream(self, source_files, profile):
        client = make_client([ndjson(contents=split(GRAPH_JSON)), ndjson()])

        with pytest.raises(EmptyOutputError) as exc_info:
            await client.generate_document(source_files, "Cardiology", profile)

        assert exc_info.value.code == "EMPTY_STREAM"

    @pytest.mark.asyncio
    async def test_graph_without_nodes_fails(self, source_files, profile):
        client = make_client([ndjson(contents=['{"title": "Nothing"}'])])

        with pytest.raises(ValueError):
            await client.generate_document(source_files, "Cardiology", profile)

    @pytest.mark.asyncio
    async def test_truncated_guide_is_continued(self, source_files, profile):
        cut = GUIDE_MARKDOWN.rstrip().rstrip(".") + " and the"
        client = make_client([
            ndjson(contents=split(GRAPH_JSON)),
            ndjson(contents=split(cut)),
            ndjson(contents=[" myocardium contracts harder."]),
        ])

        document = await client.generate_document(source_files, "Cardiology", profile)

        assert document.markdown_content.endswith("myocardium contracts harder.")

    @pytest.mark.asyncio
    async def test_images_are_attached(self, profile):
        seen = []
        client = make_client([
            ndjson(contents=split(GRAPH_JSON)),
            ndjson(contents=split(GUIDE_MARKDOWN)),
        ], requests_seen=seen)
        files = [SourceFile(name="ecg.png", mime_type="image/png", data=b"\x89PNG")]

        await client.generate_document(files, "Cardiology", profile)

        assert seen[0]["messages"][1]["images"] == ["iVBORw=="]


class TestChatEvents:
    """Test tutor replies."""

    @pytest.mark.asyncio
    async def test_reply_and_history(self, profile, note):
        seen = []
        client = make_client([ndjson(contents=["Preload ", "is stretch."], thoughts=["hmm"])], requests_seen=seen)
        history = [
            ChatMessage(role="user", text="Hi"),
            ChatMessage(role="model", text="Hello!"),
            ChatMessage(role="model", text="", is_thinking=True),
            ChatMessage(role="model", text="Something went wrong.", is_error=True),
        ]
        chunks = []

        reply = await client.stream_chat_response(
            history, "What is preload?", note.markdown_content, profile, note.graph_data.nodes,
            ConversationMode.TUTOR, on_chunk=chunks.append,
        )

        assert reply == "Preload is stretch."
        assert chunks == ["Preload ", "Preload is stretch."]
        messages = seen[0]["messages"]
        assert messages[0]["role"] == "system"
        assert [(m["role"], m["content"]) for m in messages[1:]] == [
            ("user", "Hi"), ("assistant", "Hello!"), ("user", "What is preload?"),
        ]
        assert seen[0]["options"]["temperature"] == 0.75

    @pytest.mark.asyncio
    async def test_quiz_mode_temperature(self, profile, note):
        seen = []
        client = make_client([ndjson(contents=["---QUIZ---"])], requests_seen=seen)

        await client.stream_chat_response(
            [], "quiz me", note.markdown_content, profile, [], ConversationMode.QUIZ,
        )

        assert seen[0]["options"]["temperature"] == 0.6

    @pytest.mark.asyncio
    async def test_custom_system_instruction(self, profile, note):
        seen = []
        client = make_client([ndjson(contents=["Case begins."])], requests_seen=seen)

        await client.stream_chat_response(
            [], "Begin", note.markdown_content, profile, [], ConversationMode.CLINICAL,
            system_instruction="You are a patient.",
        )

        assert seen[0]["messages"][0]["content"] == "You are a patient."

    @pytest.mark.asyncio
    async def test_empty_reply_raises(self, profile, note):
        client = make_client([ndjson(thoughts=["thinking only"])])

        with pytest.raises(EmptyOutputError):
            await client.stream_chat_response([], "Hi", "", profile, [], ConversationMode.TUTOR)

    @pytest.mark.asyncio
    async def test_http_error(self, profile):
        client = make_client([httpx.Response(404, text="model 'test-chat' not found")])

        with pytest.raises(OllamaError) as exc_info:
            await client.stream_chat_response([], "Hi", "", profile, [], ConversationMode.TUTOR)

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_transient_error_retried_before_first_chunk(self, profile, monkeypatch):
        monkeypatch.setattr(ollama_streaming, "LLM_RETRY_BASE_DELAY", 0)
        client = make_client([httpx.Response(503, text="overloaded"), ndjson(contents=["Recovered."])])

        reply = await client.stream_chat_response([], "Hi", "", profile, [], ConversationMode.TUTOR)

        assert reply == "Recovered."

    @pytest.mark.asyncio
    async def test_error_line_in_stream(self, profile):
        body = (json.dumps({"error": "model crashed"}) + "\n").encode()
        client = make_client([body])

        with pytest.raises(OllamaError):
            await client.stream_chat_response([], "Hi", "", profile, [], ConversationMode.TUTOR)


class TestQuizFeedback:
    """Test structured answer evaluation."""

    @pytest.mark.asyncio
    async def test_verdict_decides_correctness(self, profile):
        reply = json.dumps({
            "verdict": "CORRECT",
            "analysis": "A fluid bolus raises venous return.",
            "optionAnalysis": {"A": "Venodilation pools blood."},
        })
        client = make_client([ndjson(contents=split(reply, 20))])

        feedback = await client.submit_quiz_answer(QUIZ, "B) IV fluid bolus", "guide", profile)

        assert isinstance(feedback, QuizFeedback)
        assert feedback.is_correct is True
        assert "Correct, Sam" in feedback.text
        assert "Venodilation pools blood." in feedback.text

    @pytest.mark.asyncio
    async def test_incorrect_verdict(self, profile):
        reply = json.dumps({
            "verdict": "INCORRECT",
            "analysis": "Venodilation lowers preload.",
            "correctAnswer": "B) IV fluid bolus",
        })
        client = make_client([ndjson(contents=[reply])])

        feedback = await client.submit_quiz_answer(QUIZ, "A) Venodilation", "guide", profile)

        assert feedback.is_correct is False
        assert "**Correct Answer:** B) IV fluid bolus" in feedback.text

    @pytest.mark.asyncio
    async def test_missing_verdict(self, profile):
        client = make_client([ndjson(contents=['{"analysis": "no verdict"}'])])

        with pytest.raises(ValueError):
            await client.submit_quiz_answer(QUIZ, "A) Venodilation", "guide", profile)

    @pytest.mark.asyncio
    async def test_idk_explanation(self, profile):
        client = make_client([ndjson(contents=["The answer is B."])])

        text = await fold_events(client.idk_events(QUIZ, "guide", profile))

        assert text == "The answer is B."
