"""
Data models for tutor conversations and quizzes.
"""
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from models.note_models import now_ms


class ConversationMode(str, Enum):
    TUTOR = "tutor"
    QUIZ = "quiz"
    EXPLAIN = "explain"
    COMPARE = "compare"
    CLINICAL = "clinical"

    @property
    def label(self) -> str:
        return MODE_LABELS[self]


MODE_LABELS = {
    ConversationMode.TUTOR: "Tutor",
    ConversationMode.QUIZ: "Quiz",
    ConversationMode.EXPLAIN: "Explain",
    ConversationMode.COMPARE: "Compare",
    ConversationMode.CLINICAL: "Clinical Simulation",
}

DIFFICULTIES = ("foundational", "intermediate", "advanced")

IDK_ANSWER = "IDK"
FULL_GUIDE_TOPIC_ID = "full-guide"


class TurnKind(str, Enum):
    """What produced a model message; used to replay a failed turn."""
    CHAT = "chat"
    QUIZ_REQUEST = "quiz_request"
    QUIZ_EXPLANATION = "quiz_explanation"
    QUIZ_EVALUATION = "quiz_evaluation"
    IDK_EXPLANATION = "idk_explanation"
    SIMULATION_START = "simulation_start"
    SIMULATION_EVALUATION = "simulation_evaluation"


class QuizAction(str, Enum):
    NEXT_QUESTION = "next_question"
    CHANGE_TOPIC = "change_topic"
    EXIT_QUIZ = "exit_quiz"


@dataclass
class QuizOption:
    label: str
    text: str


@dataclass
class QuizQuestion:
    id: str
    topic: str
    question: str
    options: List[QuizOption]
    difficulty: str = "intermediate"

    def option_text(self, label: str) -> Optional[str]:
        for option in self.options:
            if option.label.upper() == label.upper():
                return option.text
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QuizQuestion":
        return cls(
            id=data["id"],
            topic=data.get("topic", "Clinical Concept"),
            question=data.get("question", ""),
            options=[QuizOption(label=o["label"], text=o["text"]) for o in data.get("options", [])],
            difficulty=data.get("difficulty", "intermediate"),
        )


@dataclass
class QuizTopic:
    id: str
    name: str


@dataclass
class QuizFeedback:
    """Evaluation of a submitted answer; ``is_correct`` comes from the verdict."""
    text: str
    is_correct: bool


@dataclass
class TurnContext:
    """Enough to replay the call that produced a model message."""
    kind: TurnKind
    user_message_id: Optional[str] = None
    quiz_message_id: Optional[str] = None
    mode: Optional[ConversationMode] = None
    input_text: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["TurnContext"]:
        if not data:
            return None
        return cls(
            kind=TurnKind(data["kind"]),
            user_message_id=data.get("user_message_id"),
            quiz_message_id=data.get("quiz_message_id"),
            mode=ConversationMode(data["mode"]) if data.get("mode") else None,
            input_text=data.get("input_text"),
        )


@dataclass
class ChatMessage:
    role: str  # "user" | "model"
    text: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: int = field(default_factory=now_ms)
    is_thinking: bool = False
    thinking_text: str = ""
    is_system_message: bool = False
    hide_from_ui: bool = False
    is_error: bool = False
    quiz_data: Optional[QuizQuestion] = None
    selected_answer: Optional[str] = None
    is_answer_submitted: bool = False
    is_correct_answer: Optional[bool] = None
    turn: Optional[TurnContext] = None

    @property
    def is_quiz(self) -> bool:
        return self.quiz_data is not None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        quiz = data.get("quiz_data")
        return cls(
            id=data["id"],
            role=data["role"],
            text=data.get("text", ""),
            timestamp=int(data.get("timestamp") or now_ms()),
            is_thinking=bool(data.get("is_thinking", False)),
            thinking_text=data.get("thinking_text", ""),
            is_system_message=bool(data.get("is_system_message", False)),
            hide_from_ui=bool(data.get("hide_from_ui", False)),
            is_error=bool(data.get("is_error", False)),
            quiz_data=QuizQuestion.from_dict(quiz) if quiz else None,
            selected_answer=data.get("selected_answer"),
            is_answer_submitted=bool(data.get("is_answer_submitted", False)),
            is_correct_answer=data.get("is_correct_answer"),
            turn=TurnContext.from_dict(data.get("turn")),
        )


@dataclass
class ClinicalSimulationState:
    active: bool = False
    reset_allowed: bool = False

    @property
    def locked(self) -> bool:
        """Mode changes away from clinical are refused while locked."""
        return self.active and not self.reset_allowed


@dataclass
class LastQuizContext:
    message_id: str
    quiz_data: QuizQuestion
    selected_answer: str
