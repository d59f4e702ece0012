"""
Tutor chat session over one note.

Holds the conversation mode, message history, quiz sub-state and the
clinical-simulation lock. Every model call goes through a thinking
placeholder that is resolved exactly once, with a reply or a failure.
"""
import asyncio
import logging
from typing import Any, Callable, List, Optional

from core.config import NOTICE_DISMISS_SECONDS
from core.errors import ErrorKind, QuizValidationError, SessionBusyError
from models.chat_models import (
    FULL_GUIDE_TOPIC_ID,
    IDK_ANSWER,
    ChatMessage,
    ClinicalSimulationState,
    ConversationMode,
    LastQuizContext,
    QuizAction,
    QuizFeedback,
    QuizTopic,
    TurnContext,
    TurnKind,
)
from models.note_models import Note
from models.profile_models import UserProfile
from services.conversation.intent import Intent, classify_intent
from services.conversation.personas import SIMULATION_COMPLETE_MARKER
from services.conversation.quiz import POST_QUIZ_ACTIONS, quiz_actions_target, quiz_request_text
from services.streaming.client import StreamingClient

logger = logging.getLogger(__name__)

FAILURE_TEXT = "Something went wrong. Please try again."
SIMULATION_BLOCKED_NOTICE = "A clinical simulation is currently running. Finish, Cancel, or Reset to change modes."
SIMULATION_START_TEXT = "🏥 Start Clinical Simulation"
SIMULATION_BEGIN_PROMPT = "Begin the clinical simulation now."
SIMULATION_FINISH_TEXT = "📝 Finish case and evaluate my performance."
SIMULATION_CANCEL_INSTRUCTION = (
    "[SYSTEM: Clinical simulation was cancelled by the user. The simulation has ended. "
    "Do not continue or reference the clinical case unless the user explicitly asks about it. "
    "You are now in Tutor mode for subsequent interactions. Respond to new questions normally.]"
)
SIMULATION_CANCEL_NOTICE = "🔄 Simulation cancelled. You're back in Tutor mode, ask me anything about the guide."


def mode_change_text(previous: ConversationMode, new: ConversationMode) -> str:
    return f"🔄 **Mode Changed:** {previous.label} → **{new.label}**"


class ConversationSession:
    """Chat state machine for one note and one learner."""

    def __init__(
        self,
        client: StreamingClient,
        note: Note,
        profile: Optional[UserProfile] = None,
        chat_repository=None,
        initial_selection: Optional[str] = None,
        notice_seconds: float = NOTICE_DISMISS_SECONDS,
        on_notice: Optional[Callable[[Optional[str]], Any]] = None,
    ):
        self.client = client
        self.note = note
        self.profile = profile
        self.chat_repository = chat_repository
        self.notice_seconds = notice_seconds
        self.on_notice = on_notice

        self.messages: List[ChatMessage] = []
        self.mode = ConversationMode.EXPLAIN if initial_selection else ConversationMode.TUTOR
        self.selection = initial_selection
        self.quiz_topics: List[QuizTopic] = client.extract_topics_from_content(note.markdown_content)
        self.selected_topic_id: Optional[str] = None
        self.awaiting_topic = False
        self.simulation = ClinicalSimulationState()
        self.last_quiz_context: Optional[LastQuizContext] = None
        self.is_sending = False
        self.notice: Optional[str] = None
        self._notice_handle: Optional[asyncio.TimerHandle] = None
        # Bumped by reset so replies still in flight are dropped
        self._epoch = 0

    @property
    def visible_messages(self) -> List[ChatMessage]:
        return [m for m in self.messages if not m.hide_from_ui]

    def find_message(self, message_id: str) -> Optional[ChatMessage]:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    async def load(self):
        """Restore the persisted history for this note."""
        if self.chat_repository is None:
            return
        stored = await self.chat_repository.get_for_note(self.note.id)
        self.messages = [m for m in stored if not m.is_thinking]

    async def _persist(self):
        if self.chat_repository is None:
            return
        try:
            await self.chat_repository.save_for_note(self.note.id, self.messages)
        except Exception as e:
            logger.error(f"{ErrorKind.PERSISTENCE_FAILURE.value}: chat history for {self.note.id}: {e}")

    def _check_idle(self):
        if self.is_sending:
            raise SessionBusyError("A reply is still being generated")

    # Notices

    def _emit_notice(self, text: str):
        self._clear_notice_timer()
        self.notice = text
        if self.on_notice:
            self.on_notice(text)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._notice_handle = loop.call_later(self.notice_seconds, self.dismiss_notice)

    def _clear_notice_timer(self):
        if self._notice_handle is not None:
            self._notice_handle.cancel()
            self._notice_handle = None

    def dismiss_notice(self):
        self._clear_notice_timer()
        if self.notice is not None:
            self.notice = None
            if self.on_notice:
                self.on_notice(None)

    # Modes

    def _set_mode(self, new_mode: ConversationMode):
        previous = self.mode
        self.mode = new_mode
        if new_mode != ConversationMode.CLINICAL and new_mode != previous:
            self.messages.append(ChatMessage(
                role="user",
                text=mode_change_text(previous, new_mode),
                is_system_message=True,
                hide_from_ui=True,
            ))

    async def switch_mode(self, new_mode: ConversationMode) -> bool:
        """
        Change the conversation mode.

        Returns False when the running simulation refuses the change (a
        transient notice is emitted). Switching to clinical mode starts a
        simulation unless one is already running.
        """
        new_mode = ConversationMode(new_mode)
        if self.simulation.locked:
            if new_mode == ConversationMode.CLINICAL:
                return True
            self._emit_notice(SIMULATION_BLOCKED_NOTICE)
            return False

        if new_mode == self.mode and new_mode != ConversationMode.CLINICAL:
            return True
        if new_mode == ConversationMode.CLINICAL:
            self._check_idle()

        self.simulation.reset_allowed = False
        self._set_mode(new_mode)

        if new_mode == ConversationMode.QUIZ:
            self.awaiting_topic = self.selected_topic_id is None
        if new_mode == ConversationMode.CLINICAL:
            await self._start_simulation()
        else:
            await self._persist()
        return True

    # Turns

    async def send(self, text: str) -> Optional[ChatMessage]:
        """Send user input; returns the resolved model message."""
        text = (text or "").strip()
        if not text:
            return None
        self._check_idle()

        decision = classify_intent(
            text,
            self.mode,
            has_quiz_context=self.last_quiz_context is not None,
            simulation_locked=self.simulation.locked,
        )
        history = list(self.messages)
        prompt = text
        if self.selection:
            prompt = f'Regarding this text: "{self.selection}"\n\n{text}'
            self.selection = None

        user_message = ChatMessage(role="user", text=text)
        self.messages.append(user_message)

        if decision.intent == Intent.QUIZ_EXPLANATION:
            turn = TurnContext(
                kind=TurnKind.QUIZ_EXPLANATION,
                user_message_id=user_message.id,
                quiz_message_id=self.last_quiz_context.message_id,
                mode=self.mode,
                input_text=prompt,
            )
        elif decision.intent == Intent.QUIZ_REQUEST:
            turn = TurnContext(
                kind=TurnKind.QUIZ_REQUEST,
                user_message_id=user_message.id,
                mode=ConversationMode.QUIZ,
                input_text=prompt,
            )
        else:
            turn = TurnContext(
                kind=TurnKind.CHAT,
                user_message_id=user_message.id,
                mode=decision.effective_mode,
                input_text=prompt,
            )
        return await self._run_turn(turn, history)

    async def _run_turn(self, turn: TurnContext, history: List[ChatMessage]) -> Optional[ChatMessage]:
        self._check_idle()
        placeholder = ChatMessage(role="model", text="", is_thinking=True, turn=turn)
        self.messages.append(placeholder)
        self.is_sending = True
        epoch = self._epoch

        def on_thought(text: str):
            if epoch == self._epoch:
                placeholder.thinking_text = text

        def on_chunk(text: str):
            if epoch == self._epoch:
                placeholder.text = text

        try:
            result = await self._call(turn, history, on_thought, on_chunk)
        except Exception as e:
            if epoch != self._epoch:
                return None
            logger.warning(f"{ErrorKind.CHAT_FAILURE.value} ({turn.kind.value}): {e}")
            placeholder.is_thinking = False
            placeholder.is_error = True
            placeholder.text = FAILURE_TEXT
            await self._persist()
            return placeholder
        finally:
            if epoch == self._epoch:
                self.is_sending = False

        if epoch != self._epoch:
            logger.debug("Dropping reply that resolved after a session reset")
            return None
        self._apply_result(turn, placeholder, result)
        await self._persist()
        return placeholder

    def _topic_scope(self) -> Optional[str]:
        if not self.selected_topic_id or self.selected_topic_id == FULL_GUIDE_TOPIC_ID:
            return None
        for topic in self.quiz_topics:
            if topic.id == self.selected_topic_id:
                return topic.name
        return None

    def _system_instruction(self, turn: TurnContext) -> Optional[str]:
        if turn.kind == TurnKind.SIMULATION_EVALUATION:
            return self.client.build_clinical_evaluation_persona(self.profile)
        if turn.kind == TurnKind.SIMULATION_START or (
            turn.mode == ConversationMode.CLINICAL and self.simulation.active
        ):
            return self.client.build_clinical_simulation_persona(self.profile, self.note)
        return None

    async def _call(self, turn: TurnContext, history: List[ChatMessage], on_thought, on_chunk):
        context = self.note.markdown_content

        if turn.kind in (TurnKind.QUIZ_EVALUATION, TurnKind.QUIZ_EXPLANATION, TurnKind.IDK_EXPLANATION):
            quiz_message = self.find_message(turn.quiz_message_id)
            if quiz_message is None or quiz_message.quiz_data is None:
                raise ValueError(f"Quiz message {turn.quiz_message_id} is no longer in the session")
            quiz = quiz_message.quiz_data

            if turn.kind == TurnKind.IDK_EXPLANATION:
                return await self.client.handle_idk_response(
                    quiz, context, self.profile, on_thought=on_thought, on_chunk=on_chunk
                )
            answer = quiz_message.selected_answer
            option_text = quiz.option_text(answer)
            if option_text:
                answer = f"{answer}) {option_text}"
            return await self.client.submit_quiz_answer(
                quiz, answer, context, self.profile, on_thought=on_thought, on_chunk=on_chunk
            )

        return await self.client.stream_chat_response(
            history,
            turn.input_text,
            context,
            self.profile,
            self.note.graph_data.nodes,
            turn.mode,
            topic_scope=self._topic_scope(),
            on_thought=on_thought,
            on_chunk=on_chunk,
            system_instruction=self._system_instruction(turn),
        )

    def _apply_result(self, turn: TurnContext, placeholder: ChatMessage, result):
        placeholder.is_thinking = False

        if isinstance(result, QuizFeedback):
            placeholder.text = result.text
            placeholder.is_correct_answer = result.is_correct
            if turn.kind == TurnKind.QUIZ_EVALUATION:
                quiz_message = self.find_message(turn.quiz_message_id)
                if quiz_message is not None:
                    quiz_message.is_correct_answer = result.is_correct
            return

        placeholder.text = result
        if turn.kind == TurnKind.QUIZ_REQUEST:
            placeholder.quiz_data = self.client.parse_quiz_from_response(result)
        if SIMULATION_COMPLETE_MARKER in result and turn.kind != TurnKind.SIMULATION_EVALUATION:
            self.simulation.active = False

    async def retry_message(self, message_id: str) -> Optional[ChatMessage]:
        """Replay the turn behind a failed reply with the same input and prior context."""
        failed = self.find_message(message_id)
        if failed is None or not failed.is_error or failed.turn is None:
            return None
        self._check_idle()

        self.messages.remove(failed)
        turn = failed.turn
        user_message = self.find_message(turn.user_message_id) if turn.user_message_id else None
        if user_message is not None:
            history = self.messages[:self.messages.index(user_message)]
        else:
            history = list(self.messages)
        return await self._run_turn(turn, history)

    # Quiz

    async def select_topic(self, topic_id: str) -> Optional[ChatMessage]:
        """Choose the quiz scope and generate the first question for it."""
        known = {topic.id for topic in self.quiz_topics} | {FULL_GUIDE_TOPIC_ID}
        if topic_id not in known:
            raise QuizValidationError(f"Unknown quiz topic: {topic_id}")
        self._check_idle()
        self.selected_topic_id = topic_id
        self.awaiting_topic = False
        return await self._request_question()

    async def _request_question(self) -> Optional[ChatMessage]:
        request = ChatMessage(role="user", text=quiz_request_text(self._topic_scope()), hide_from_ui=True)
        history = list(self.messages)
        self.messages.append(request)
        turn = TurnContext(
            kind=TurnKind.QUIZ_REQUEST,
            user_message_id=request.id,
            mode=ConversationMode.QUIZ,
            input_text=request.text,
        )
        return await self._run_turn(turn, history)

    def select_answer(self, message_id: str, answer: str) -> bool:
        """Record a choice on an unsubmitted quiz message. No model call."""
        message = self.find_message(message_id)
        if message is None or not message.is_quiz or message.is_answer_submitted:
            return False
        label = (answer or "").strip().upper()
        if message.quiz_data.option_text(label) is None:
            return False
        message.selected_answer = label
        return True

    def _quiz_message(self, message_id: str) -> ChatMessage:
        message = self.find_message(message_id)
        if message is None or not message.is_quiz:
            raise QuizValidationError(f"Message {message_id} is not a quiz question")
        return message

    async def submit_quiz(self, message_id: str) -> Optional[ChatMessage]:
        """
        Evaluate the selected answer.

        Raises QuizValidationError (with nothing changed) when no answer is
        selected; a message that was already submitted is left alone.
        """
        message = self._quiz_message(message_id)
        if message.is_answer_submitted:
            return None
        if not message.selected_answer:
            raise QuizValidationError("Select an answer before submitting")
        self._check_idle()

        message.is_answer_submitted = True
        self.last_quiz_context = LastQuizContext(
            message_id=message.id,
            quiz_data=message.quiz_data,
            selected_answer=message.selected_answer,
        )
        turn = TurnContext(kind=TurnKind.QUIZ_EVALUATION, quiz_message_id=message.id, mode=ConversationMode.QUIZ)
        return await self._run_turn(turn, list(self.messages))

    async def idk(self, message_id: str) -> Optional[ChatMessage]:
        """"I don't know": terminal for the question, explanation only, never graded."""
        message = self._quiz_message(message_id)
        if message.is_answer_submitted:
            return None
        self._check_idle()

        message.selected_answer = IDK_ANSWER
        message.is_answer_submitted = True
        turn = TurnContext(kind=TurnKind.IDK_EXPLANATION, quiz_message_id=message.id, mode=ConversationMode.QUIZ)
        return await self._run_turn(turn, list(self.messages))

    def quiz_actions_target(self) -> Optional[str]:
        return quiz_actions_target(self.messages)

    def post_quiz_actions(self, message_id: str) -> List[QuizAction]:
        if message_id and message_id == self.quiz_actions_target():
            return list(POST_QUIZ_ACTIONS)
        return []

    async def next_question(self) -> Optional[ChatMessage]:
        if self.mode != ConversationMode.QUIZ and not await self.switch_mode(ConversationMode.QUIZ):
            return None
        self._check_idle()
        if self.selected_topic_id is None:
            self.selected_topic_id = FULL_GUIDE_TOPIC_ID
        self.awaiting_topic = False
        return await self._request_question()

    async def change_topic(self) -> bool:
        if self.mode != ConversationMode.QUIZ and not await self.switch_mode(ConversationMode.QUIZ):
            return False
        self.awaiting_topic = True
        return True

    async def exit_quiz(self) -> bool:
        return await self.switch_mode(ConversationMode.TUTOR)

    # Clinical simulation

    async def _start_simulation(self) -> Optional[ChatMessage]:
        self.simulation.active = True
        history = list(self.messages)
        start = ChatMessage(role="user", text=SIMULATION_START_TEXT)
        self.messages.append(start)
        turn = TurnContext(
            kind=TurnKind.SIMULATION_START,
            user_message_id=start.id,
            mode=ConversationMode.CLINICAL,
            input_text=SIMULATION_BEGIN_PROMPT,
        )
        return await self._run_turn(turn, history)

    async def finish_simulation(self) -> Optional[ChatMessage]:
        """Ask for the case evaluation, then return to tutor mode."""
        if not self.simulation.active:
            return None
        self._check_idle()

        history = list(self.messages)
        finish = ChatMessage(role="user", text=SIMULATION_FINISH_TEXT)
        self.messages.append(finish)
        turn = TurnContext(
            kind=TurnKind.SIMULATION_EVALUATION,
            user_message_id=finish.id,
            mode=ConversationMode.CLINICAL,
            input_text=SIMULATION_FINISH_TEXT,
        )
        reply = await self._run_turn(turn, history)
        if reply is not None and not reply.is_error:
            self.simulation.active = False
            self._set_mode(ConversationMode.TUTOR)
            await self._persist()
        return reply

    async def cancel_simulation(self) -> bool:
        """End the simulation without evaluation."""
        if not self.simulation.active and self.mode != ConversationMode.CLINICAL:
            return False
        self.simulation.active = False
        self.simulation.reset_allowed = True
        self._set_mode(ConversationMode.TUTOR)
        self.messages.append(ChatMessage(
            role="user",
            text=SIMULATION_CANCEL_INSTRUCTION,
            is_system_message=True,
            hide_from_ui=True,
        ))
        self.messages.append(ChatMessage(role="model", text=SIMULATION_CANCEL_NOTICE, is_system_message=True))
        await self._persist()
        return True

    async def reset(self):
        """Clear the conversation and release the simulation lock."""
        self._epoch += 1
        self.messages = []
        self.is_sending = False
        self.mode = ConversationMode.TUTOR
        self.last_quiz_context = None
        self.selected_topic_id = None
        self.awaiting_topic = False
        self.simulation.active = False
        self.simulation.reset_allowed = True
        self.dismiss_notice()

        if self.chat_repository is not None:
            try:
                await self.chat_repository.delete_for_note(self.note.id)
            except Exception as e:
                logger.error(f"{ErrorKind.PERSISTENCE_FAILURE.value}: could not delete chat for {self.note.id}: {e}")
