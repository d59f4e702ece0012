"""
Shared fixtures: a scripted streaming client and a throwaway database.
"""
import pytest

from core.database import Database
from core.errors import EmptyOutputError
from models.chat_models import QuizFeedback
from models.note_models import GraphData, KnowledgeLink, KnowledgeNode, Note, SourceFile
from models.profile_models import UserProfile
from models.stream_models import FinalDocument, GenerationPhase, GraphPayload, PhaseUpdate, StreamEvent
from services.streaming.client import StreamingClient

GUIDE_MARKDOWN = """# Cardiac Output

## 1. Preload
Preload is the end-diastolic stretch of the myocardium. It rises with venous return.

## 2. Afterload
Afterload is the resistance the ventricle must overcome to eject blood.

## 3. Contractility
Contractility is the intrinsic strength of the myocardium.
"""

QUIZ_REPLY = """Here is your question.

---QUIZ---
TOPIC: Preload
DIFFICULTY: intermediate
QUESTION: Which change increases preload?
A) Venodilation
B) Hemorrhage
C) IV fluid bolus
D) Standing up quickly
---END---"""


def sample_graph() -> GraphPayload:
    return GraphPayload(
        title="Cardiac Output",
        summary="Determinants of cardiac output.",
        eli5_analogy="The heart is a pump filling a bucket.",
        graph_data=GraphData(
            nodes=[
                KnowledgeNode(id="preload", label="Preload", group=1),
                KnowledgeNode(id="afterload", label="Afterload", group=1),
            ],
            links=[KnowledgeLink(source="preload", target="afterload", relationship="balances")],
        ),
    )


def success_script(markdown: str = GUIDE_MARKDOWN):
    """Events of a clean two-phase generation."""
    graph = sample_graph()
    return [
        StreamEvent.phase(PhaseUpdate(GenerationPhase.METADATA, "extracting")),
        StreamEvent.thought("Reading the sources"),
        StreamEvent.phase(PhaseUpdate(GenerationPhase.METADATA, "verifying")),
        StreamEvent.phase(PhaseUpdate(GenerationPhase.METADATA, "graphing")),
        StreamEvent.phase(PhaseUpdate(GenerationPhase.METADATA, "graphing", graph=graph)),
        StreamEvent.phase(PhaseUpdate(GenerationPhase.MARKDOWN, "structuring")),
        StreamEvent.phase(PhaseUpdate(GenerationPhase.MARKDOWN, "writing", markdown_content=markdown[:60])),
        StreamEvent.phase(PhaseUpdate(GenerationPhase.MARKDOWN, "writing", markdown_content=markdown[:150])),
        StreamEvent.phase(PhaseUpdate(GenerationPhase.MARKDOWN, "citing", markdown_content=markdown)),
        StreamEvent.complete(FinalDocument(
            markdown_content=markdown,
            title=graph.title,
            summary=graph.summary,
            eli5_analogy=graph.eli5_analogy,
            graph_data=graph.graph_data,
        )),
    ]


def empty_stream_script():
    """Graph phase succeeds, guide phase produces nothing."""
    graph = sample_graph()
    return [
        StreamEvent.phase(PhaseUpdate(GenerationPhase.METADATA, "extracting")),
        StreamEvent.phase(PhaseUpdate(GenerationPhase.METADATA, "graphing", graph=graph)),
        StreamEvent.phase(PhaseUpdate(GenerationPhase.MARKDOWN, "structuring")),
        StreamEvent.error(EmptyOutputError("Guide stream returned no content", code="EMPTY_STREAM")),
    ]


class ScriptedStreamingClient(StreamingClient):
    """
    Replays queued event scripts instead of calling a model.

    Each ``*_scripts`` list is consumed front to back, one script per call.
    A script entry that is an exception is raised at that point.
    """

    def __init__(self):
        super().__init__()
        self.document_scripts = []
        self.chat_scripts = []
        self.quiz_scripts = []
        self.idk_scripts = []
        self.document_calls = []
        self.chat_calls = []
        self.quiz_calls = []
        self.idk_calls = []

    async def _replay(self, script):
        for event in script:
            if isinstance(event, BaseException):
                raise event
            yield event

    def document_events(self, files, topic, profile):
        self.document_calls.append({"files": files, "topic": topic, "profile": profile})
        return self._replay(self.document_scripts.pop(0))

    def chat_events(self, history, message, content_context, profile, graph_nodes, mode,
                    topic_scope=None, system_instruction=None):
        self.chat_calls.append({
            "history": list(history),
            "message": message,
            "mode": mode,
            "topic_scope": topic_scope,
            "system_instruction": system_instruction,
        })
        return self._replay(self.chat_scripts.pop(0))

    def quiz_answer_events(self, quiz, answer, context, profile):
        self.quiz_calls.append({"quiz": quiz, "answer": answer})
        return self._replay(self.quiz_scripts.pop(0))

    def idk_events(self, quiz, context, profile):
        self.idk_calls.append({"quiz": quiz})
        return self._replay(self.idk_scripts.pop(0))

    def queue_reply(self, text: str):
        self.chat_scripts.append([
            StreamEvent.thought("thinking"),
            StreamEvent.content(text[: len(text) // 2]),
            StreamEvent.content(text),
            StreamEvent.complete(text),
        ])

    def queue_failure(self, error: Exception = None):
        self.chat_scripts.append([error or RuntimeError("model offline")])

    def queue_feedback(self, is_correct: bool, text: str = "## Result"):
        self.quiz_scripts.append([StreamEvent.content(text), StreamEvent.complete(QuizFeedback(text, is_correct))])


@pytest.fixture
def client():
    return ScriptedStreamingClient()


@pytest.fixture
def database(tmp_path):
    return Database(tmp_path / "test.db")


@pytest.fixture
def profile():
    return UserProfile(name="Sam", discipline="Medicine", exam_goal="USMLE Step 1")


@pytest.fixture
def source_files():
    return [SourceFile(name="lecture.txt", mime_type="text/plain", data=b"Preload and afterload notes.")]


@pytest.fixture
def note():
    graph = sample_graph()
    return Note(
        id="note-1",
        title=graph.title,
        markdown_content=GUIDE_MARKDOWN,
        summary=graph.summary,
        graph_data=graph.graph_data,
    )
