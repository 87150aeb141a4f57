"""Selection of the transcript slice forwarded to the inference backend."""
from __future__ import annotations

from typing import List, Sequence, TypeVar

from .errors import ConfigError

T = TypeVar("T")

DEFAULT_WINDOW = 20


def window_messages(transcript: Sequence[T], max_messages: int = DEFAULT_WINDOW) -> List[T]:
    """Return the messages to send to the model.

    Short transcripts pass through unchanged. Longer ones keep the first
    message (it usually sets up the task) plus the trailing
    ``max_messages - 1`` messages, in order.
    """
    if max_messages <= 0:
        raise ConfigError(f"window size must be positive, got {max_messages}")
    items = list(transcript)
    if len(items) <= max_messages:
        return items
    if max_messages == 1:
        return items[:1]
    return [items[0], *items[-(max_messages - 1):]]
