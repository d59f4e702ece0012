"""
Folding of tagged stream events into callbacks.
"""
import inspect
from typing import Any, AsyncIterator, Callable, Optional

from core.errors import StreamIncompleteError
from models.stream_models import EventType, StreamEvent


async def notify(callback: Optional[Callable], value: Any):
    if callback is None:
        return
    result = callback(value)
    if inspect.isawaitable(result):
        await result


async def fold_events(
    events: AsyncIterator[StreamEvent],
    on_thought: Optional[Callable[[str], Any]] = None,
    on_content: Optional[Callable[[str], Any]] = None,
    on_phase: Optional[Callable[[Any], Any]] = None,
) -> Any:
    """
    Consume a stream until its terminal event.

    Callbacks receive each snapshot as it arrives (sync or async callables).
    Returns the COMPLETE payload; an ERROR event re-raises its exception.
    Anything the stream yields after the terminal event is never read.

    Raises:
        StreamIncompleteError: the stream ran dry without a terminal event
    """
    try:
        async for event in events:
            if event.type == EventType.THOUGHT:
                await notify(on_thought, event.payload)
            elif event.type == EventType.CONTENT:
                await notify(on_content, event.payload)
            elif event.type == EventType.PHASE:
                await notify(on_phase, event.payload)
            elif event.type == EventType.COMPLETE:
                return event.payload
            elif event.type == EventType.ERROR:
                raise event.payload
    finally:
        aclose = getattr(events, "aclose", None)
        if aclose is not None:
            await aclose()

    raise StreamIncompleteError("Stream ended without a terminal event")
