"""
Recovery from empty-output generation failures.

A retryable failure opens a recovery window: a countdown that retries
automatically when it runs out, plus an immediate manual retry. Only one
retry is outstanding at a time, and cancelling stops everything.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional

from core.config import RETRY_COUNTDOWN_SECONDS
from core.errors import ErrorKind, GenerationError, GenerationInProgressError
from core.pipeline import GenerationOrchestrator
from models.note_models import Note, SourceFile
from models.profile_models import UserProfile
from services.streaming.events import notify

logger = logging.getLogger(__name__)

AUTO_RETRY_FAILED_MESSAGE = "Auto-retry failed. Please try again or start over."
GENERIC_FAILURE_MESSAGE = "Analysis failed. Please start a new generation."
BUSY_MESSAGE = "Another study guide is still being generated. Please wait for it to finish."


class RecoveryState(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    AWAITING_RETRY = "AWAITING_RETRY"
    COUNTING_DOWN = "COUNTING_DOWN"
    RETRYING = "RETRYING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


OPEN_RECOVERY_STATES = (RecoveryState.AWAITING_RETRY, RecoveryState.COUNTING_DOWN)
SETTLED_STATES = (RecoveryState.IDLE, RecoveryState.SUCCEEDED, RecoveryState.FAILED)


@dataclass
class GenerationRequest:
    """Inputs replayed unchanged by every retry."""
    files: List[SourceFile]
    topic: str
    profile: Optional[UserProfile]


class RetryPolicy:
    """Wraps generation attempts with countdown and manual retry."""

    def __init__(
        self,
        orchestrator: GenerationOrchestrator,
        countdown_seconds: int = RETRY_COUNTDOWN_SECONDS,
        tick_interval: float = 1.0,
        auto_countdown: bool = True,
        on_tick: Optional[Callable[[int], Any]] = None,
        on_phase_update: Optional[Callable] = None,
        on_thought: Optional[Callable[[str], Any]] = None,
        on_note_ready: Optional[Callable[[Note], Any]] = None,
    ):
        self.orchestrator = orchestrator
        self.countdown_seconds = countdown_seconds
        self.tick_interval = tick_interval
        self.auto_countdown = auto_countdown
        self.on_tick = on_tick
        self.on_phase_update = on_phase_update
        self.on_thought = on_thought
        self.on_note_ready = on_note_ready

        self.state = RecoveryState.IDLE
        self.request: Optional[GenerationRequest] = None
        self.remaining = 0
        self.attempts = 0
        self.error_message: Optional[str] = None
        self.error_kind: Optional[ErrorKind] = None
        self.result: Optional[Note] = None
        self.retry_task: Optional[asyncio.Task] = None
        self._countdown_task: Optional[asyncio.Task] = None
        self.note_id: Optional[str] = None
        self.reserved = False
        # Bumped on cancel so attempts still in flight cannot touch state
        self._epoch = 0

    @property
    def countdown_active(self) -> bool:
        return self._countdown_task is not None and not self._countdown_task.done()

    @property
    def retry_outstanding(self) -> bool:
        return self.retry_task is not None and not self.retry_task.done()

    @property
    def busy(self) -> bool:
        """Whether an attempt is running or has been scheduled to run."""
        if self.reserved or self.retry_outstanding:
            return True
        return self.state in (RecoveryState.RUNNING, RecoveryState.RETRYING)

    def reserve(self):
        """Claim the orchestrator before the first attempt is scheduled."""
        self.reserved = True

    def _set_state(self, state: RecoveryState):
        logger.debug(f"Recovery state {self.state.value} -> {state.value}")
        self.state = state

    async def run(self, files: List[SourceFile], topic: str, profile: Optional[UserProfile]) -> Optional[Note]:
        """First attempt. Returns the note, or None when it failed."""
        self.request = GenerationRequest(files=list(files), topic=topic, profile=profile)
        self.result = None
        return await self._attempt(initial=True)

    async def _attempt(self, initial: bool) -> Optional[Note]:
        epoch = self._epoch
        request = self.request
        self.attempts += 1
        self.reserved = False
        self._set_state(RecoveryState.RUNNING if initial else RecoveryState.RETRYING)

        def on_started(note: Note):
            if epoch == self._epoch:
                self.note_id = note.id

        try:
            note = await self.orchestrator.start_generation(
                request.files,
                request.topic,
                request.profile,
                on_phase_update=self.on_phase_update,
                on_thought=self.on_thought,
                on_note_ready=self.on_note_ready,
                on_started=on_started,
            )
        except GenerationInProgressError:
            if epoch != self._epoch:
                return None
            logger.warning("Generation attempt refused: another generation is running")
            self.error_message = BUSY_MESSAGE
            self.error_kind = None
            self._set_state(RecoveryState.FAILED if initial else RecoveryState.AWAITING_RETRY)
            return None
        except GenerationError as e:
            if epoch != self._epoch:
                return None
            self.error_kind = e.kind
            if e.retryable:
                self.error_message = str(e)
                self._set_state(RecoveryState.AWAITING_RETRY)
                if initial and self.auto_countdown:
                    self.start_countdown()
            else:
                self.error_message = GENERIC_FAILURE_MESSAGE
                self._set_state(RecoveryState.FAILED)
            return None

        if epoch != self._epoch:
            return None
        if note is None:
            logger.info("Generation attempt was discarded before it finished")
            self._set_state(RecoveryState.IDLE)
            return None
        self.result = note
        self.error_message = None
        self.error_kind = None
        self._set_state(RecoveryState.SUCCEEDED)
        return note

    def start_countdown(self) -> bool:
        """Begin the countdown to an automatic retry. Must run inside the event loop."""
        if self.state != RecoveryState.AWAITING_RETRY or self.countdown_active or self.retry_outstanding:
            return False
        self.remaining = self.countdown_seconds
        self._set_state(RecoveryState.COUNTING_DOWN)
        self._countdown_task = asyncio.get_running_loop().create_task(self._countdown(self._epoch))
        return True

    async def _countdown(self, epoch: int):
        while self.remaining > 0:
            await asyncio.sleep(self.tick_interval)
            if epoch != self._epoch:
                return
            self.remaining -= 1
            await notify(self.on_tick, self.remaining)

        logger.info("Retry countdown expired, retrying automatically")
        self._countdown_task = None
        self.retry_task = asyncio.get_running_loop().create_task(self._retry(auto=True))

    def _stop_countdown(self):
        if self.countdown_active:
            self._countdown_task.cancel()
        self._countdown_task = None

    async def retry_now(self) -> Optional[Note]:
        """Manual retry. No-op unless recovery is open and no retry is outstanding."""
        if self.retry_outstanding or self.state not in OPEN_RECOVERY_STATES:
            self.reserved = False
            return None
        self._stop_countdown()
        self.retry_task = asyncio.get_running_loop().create_task(self._retry(auto=False))
        return await self.retry_task

    async def _retry(self, auto: bool) -> Optional[Note]:
        note = await self._attempt(initial=False)
        if note is None and auto and self.state == RecoveryState.AWAITING_RETRY:
            self.error_message = AUTO_RETRY_FAILED_MESSAGE
        return note

    async def wait(self) -> Optional[Note]:
        """Wait for the countdown and any retry it started."""
        if self._countdown_task is not None:
            try:
                await self._countdown_task
            except asyncio.CancelledError:
                pass
        if self.retry_task is not None:
            return await self.retry_task
        return self.result

    def cancel(self) -> bool:
        """
        Abandon the attempt or recovery: stop the countdown, drop this
        policy's temp note, go idle.

        A settled policy is left alone and False is returned; the shared
        orchestrator may already be working on another policy's note.
        """
        if self.state in SETTLED_STATES:
            return False
        self._epoch += 1
        self._stop_countdown()
        self.reserved = False
        if self.note_id is not None:
            self.orchestrator.discard(self.note_id)
            self.note_id = None
        self.remaining = 0
        self.error_message = None
        self.error_kind = None
        self.request = None
        self._set_state(RecoveryState.IDLE)
        logger.info("Generation recovery cancelled")
        return True
