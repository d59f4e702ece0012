"""
Quiz helpers: feedback formatting, post-quiz action placement and the
canned requests that drive question generation.
"""
import re
from typing import Any, Dict, List, Optional

from models.chat_models import ChatMessage, QuizAction, QuizFeedback, QuizQuestion
from models.profile_models import UserProfile

POST_QUIZ_ACTIONS = [QuizAction.NEXT_QUESTION, QuizAction.CHANGE_TOPIC, QuizAction.EXIT_QUIZ]


def _truncate_sentences(text: str, max_chars: int = 900) -> str:
    """Cut text to whole sentences within ``max_chars``."""
    text = (text or "").strip()
    if len(text) <= max_chars:
        return text
    out = ""
    for sentence in re.findall(r"[^.!?]+[.!?]+", text):
        if len(out) + len(sentence) > max_chars:
            break
        out += sentence
    return out.strip() or text[:max_chars].strip()


def _selected_label(answer: str) -> Optional[str]:
    match = re.search(r"[A-D]", (answer or "").upper())
    return match.group(0) if match else None


def format_quiz_feedback(
    quiz: QuizQuestion,
    answer: str,
    feedback: Dict[str, Any],
    profile: Optional[UserProfile] = None,
) -> QuizFeedback:
    """
    Render a structured verdict as markdown.

    ``is_correct`` is taken from the verdict field, never inferred from text.
    """
    profile = profile or UserProfile()
    name = profile.name or "there"
    is_correct = str(feedback.get("verdict", "")).strip().upper() == "CORRECT"
    option_analysis = feedback.get("optionAnalysis") or {}
    selected = _selected_label(answer)

    if is_correct:
        lines = ["## Result", "", f"**✓ Correct, {name}!**"]
    else:
        lines = ["## Result", "", f"**✗ Not quite, {name}.**", "", "Let's refine your diagnostic lens."]
    lines += ["", f"**Your Selection:** {answer}"]

    if not is_correct:
        if feedback.get("correctAnswer"):
            lines += ["", f"**Correct Answer:** {feedback['correctAnswer']}"]
        if selected and option_analysis.get(selected):
            lines += ["", f"**Why {selected} is tempting:** {option_analysis[selected].strip()}"]

    lines += ["", "## Analysis", "", _truncate_sentences(feedback.get("analysis", ""))]

    if feedback.get("correctAnswerExplanation"):
        lines += ["", f"**Key rationale:** {feedback['correctAnswerExplanation']}"]

    other_options = [
        option for option in quiz.options
        if option.label.upper() != selected and option_analysis.get(option.label)
    ]
    if other_options:
        lines += ["", "## Other Options", ""]
        for option in other_options:
            lines += [f"**{option.label}) {option.text}**", "", f"  {option_analysis[option.label].strip()}", ""]

    if feedback.get("corePrinciple"):
        lines += ["", f"> **Core principle:** {feedback['corePrinciple']}"]
    if feedback.get("examStrategy"):
        lines += ["", f"**{profile.effective_exam_goal} strategy:** {feedback['examStrategy']}"]

    return QuizFeedback(text="\n".join(lines).strip(), is_correct=is_correct)


def quiz_actions_target(messages: List[ChatMessage]) -> Optional[str]:
    """
    Id of the message that carries the post-quiz actions, if any.

    That is the first settled model reply after the most recently submitted
    quiz message.
    """
    last_submitted = None
    for index, message in enumerate(messages):
        if message.is_quiz and message.is_answer_submitted:
            last_submitted = index
    if last_submitted is None:
        return None

    for message in messages[last_submitted + 1:]:
        if message.role != "model" or message.hide_from_ui:
            continue
        if message.is_thinking or message.is_error or message.is_quiz:
            return None
        return message.id
    return None


def quiz_request_text(topic_name: Optional[str]) -> str:
    if topic_name:
        return f"Quiz me with one question on {topic_name}."
    return "Quiz me with one question from anywhere in the guide."
