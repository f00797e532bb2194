"""Core data structures for the rethread translation pipeline."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

if TYPE_CHECKING:
    from .errors import RethreadError


TextGetter = Callable[[], str]
TextSetter = Callable[[str], None]

# Maps an OriginalUnit index to its reassembled translated text.
ReassembledTranslation = Dict[int, str]


@dataclass(frozen=True)
class OriginalUnit:
    """A caller-supplied block of text, possibly spanning several lines."""

    index: int
    raw_text: str

    @property
    def is_multiline(self) -> bool:
        return "\n" in self.raw_text


@dataclass(frozen=True)
class ExpandedSegment:
    """An atomic, translation-ready piece of an OriginalUnit."""

    index: int
    text: str
    original_index: int
    is_empty_line: bool = False
    line_index: int = 0


@dataclass(frozen=True)
class Batch:
    """An ordered run of segments submitted together in one backend call."""

    batch_index: int
    segments: List[ExpandedSegment]

    @property
    def segment_indices(self) -> List[int]:
        return [segment.index for segment in self.segments]

    @property
    def translatable(self) -> List[ExpandedSegment]:
        """Segments that are actually sent to a backend."""

        return [segment for segment in self.segments if not segment.is_empty_line]

    @property
    def char_count(self) -> int:
        return sum(len(segment.text) for segment in self.segments)


class JobState(Enum):
    """Lifecycle states of a translation job."""

    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"
    TIMEOUT = "timeout"

    @property
    def is_final(self) -> bool:
        return self in FINAL_STATES

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATES


FINAL_STATES = frozenset({JobState.COMPLETED, JobState.CANCELLED, JobState.ERROR})
ACTIVE_STATES = frozenset({JobState.PENDING, JobState.STREAMING, JobState.TIMEOUT})


@dataclass
class StreamUpdate:
    """An incremental result covering one batch or one fallback item."""

    job_id: str
    batch_index: int
    success: bool
    translated_texts: List[str] = field(default_factory=list)
    original_texts: List[str] = field(default_factory=list)
    segment_indices: List[int] = field(default_factory=list)
    error: Optional["RethreadError"] = None
    item_index: Optional[int] = None


@dataclass
class MatchCandidate:
    """A scored pairing of a translation with a destination holder."""

    holder_index: int
    score: float
    match_type: str


@dataclass
class CancellationSource:
    """External cancellation inputs polled by the coordinator.

    ``probe`` returns True once the caller wants the job stopped. ``abort_event``
    is an optional event that may be set from any coroutine. ``host_alive``
    returns False when the hosting environment has gone away.
    """

    probe: Optional[Callable[[], bool]] = None
    abort_event: Optional[asyncio.Event] = None
    host_alive: Optional[Callable[[], bool]] = None

    def cancel_requested(self) -> bool:
        if self.abort_event is not None and self.abort_event.is_set():
            return True
        return bool(self.probe and self.probe())

    def host_invalidated(self) -> bool:
        return self.host_alive is not None and not self.host_alive()


class TextHolder(ABC):
    """A place where original text lives and where a translation is written."""

    @abstractmethod
    def current_text(self) -> str:
        """Return the text currently held."""

    @abstractmethod
    def write(self, text: str) -> None:
        """Replace the held text."""


class BufferHolder(TextHolder):
    """In-memory holder, used by the CLI and in tests."""

    def __init__(self, text: str, location: str = "") -> None:
        self.text = text
        self.location = location
        self.writes: List[str] = []

    def current_text(self) -> str:
        return self.text

    def write(self, text: str) -> None:
        self.text = text
        self.writes.append(text)

    def __repr__(self) -> str:
        return f"BufferHolder({self.text!r}, location={self.location!r})"


class CallbackHolder(TextHolder):
    """Adapts a getter/setter pair owned by the caller."""

    def __init__(self, getter: TextGetter, setter: TextSetter, location: str = "") -> None:
        self._getter = getter
        self._setter = setter
        self.location = location

    def current_text(self) -> str:
        return self._getter()

    def write(self, text: str) -> None:
        self._setter(text)
