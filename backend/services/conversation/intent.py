"""
Keyword intent classification for chat input.
"""
import re
from dataclasses import dataclass
from enum import Enum

from models.chat_models import ConversationMode

QUIZ_PATTERN = re.compile(r"quiz|test me|question|mcq|assess", re.IGNORECASE)
EXPLAIN_ANSWER_PATTERN = re.compile(r"try again|explain.*answer|why.*wrong|what.*correct", re.IGNORECASE)


class Intent(str, Enum):
    CHAT = "chat"
    QUIZ_REQUEST = "quiz_request"
    QUIZ_EXPLANATION = "quiz_explanation"


@dataclass
class IntentDecision:
    intent: Intent
    effective_mode: ConversationMode


def classify_intent(
    text: str,
    mode: ConversationMode,
    has_quiz_context: bool = False,
    simulation_locked: bool = False,
) -> IntentDecision:
    """
    Decide how a message is answered.

    A running simulation keeps every message in the simulation. Otherwise a
    follow-up about the last answer gets the explanation path, and quiz
    wording (or quiz mode itself) produces a question.
    """
    if simulation_locked:
        return IntentDecision(Intent.CHAT, mode)
    if has_quiz_context and EXPLAIN_ANSWER_PATTERN.search(text):
        return IntentDecision(Intent.QUIZ_EXPLANATION, mode)
    if mode == ConversationMode.QUIZ or QUIZ_PATTERN.search(text):
        return IntentDecision(Intent.QUIZ_REQUEST, ConversationMode.QUIZ)
    return IntentDecision(Intent.CHAT, mode)
