"""Text segmentation and batching utilities."""

from __future__ import annotations

import logging
import math
import re
from enum import Enum
from typing import Iterable, List, Optional, Sequence

from .errors import ValidationError
from .structures import Batch, ExpandedSegment, OriginalUnit

logger = logging.getLogger(__name__)

SENTENCE_PATTERN = re.compile(
    r".+?(?:[\.!?…‽。！？；؛](?:\s+|$)|$)", re.DOTALL
)
CLAUSE_PATTERN = re.compile(
    r".+?(?:[,;:،，；：](?:\s+|$)|$)", re.DOTALL
)
TOKEN_PATTERN = re.compile(r"\S+\s*|\s+")
SENTENCE_END_PATTERN = re.compile(r"[.!?]+")

SMART_SINGLE_BATCH_SEGMENTS = 20
SMART_SINGLE_BATCH_COMPLEXITY = 300


def units_from_texts(texts: Iterable[Optional[str]]) -> List[OriginalUnit]:
    """Wrap raw strings as OriginalUnits, rejecting missing text."""

    units: List[OriginalUnit] = []
    for index, text in enumerate(texts):
        if text is None:
            raise ValidationError(f"Text unit {index} has no text.")
        if not isinstance(text, str):
            raise ValidationError(
                f"Text unit {index} must be a string, got {type(text).__name__}."
            )
        units.append(OriginalUnit(index=index, raw_text=text))
    return units


def _consume_pattern(pattern: re.Pattern[str], text: str) -> List[str]:
    """Split text by greedily consuming matches from the start of a string."""

    pieces: List[str] = []
    index = 0
    while index < len(text):
        match = pattern.match(text, index)
        end = match.end() if match else len(text)
        if end == index:
            end += 1
        pieces.append(text[index:end])
        index = end
    return pieces


def _hard_cut(text: str, limit: int) -> List[str]:
    """Cut text lacking usable boundaries (e.g. CJK scripts) into fixed chunks."""

    return [text[start:start + limit] for start in range(0, len(text), limit)]


def _pack(chunks: Sequence[str], limit: int) -> List[str]:
    """Greedily join consecutive chunks while they fit within the limit."""

    packed: List[str] = []
    current = ""
    for chunk in chunks:
        if current and len(current) + len(chunk) > limit:
            packed.append(current)
            current = ""
        current += chunk
    if current:
        packed.append(current)
    return packed


def _split_words(text: str, limit: int) -> List[str]:
    tokens: List[str] = []
    for token in TOKEN_PATTERN.findall(text):
        if len(token) > limit:
            tokens.extend(_hard_cut(token, limit))
        else:
            tokens.append(token)
    return _pack(tokens, limit)


def split_line(text: str, limit: int) -> List[str]:
    """Split an over-long line into sentence-aligned pieces within the limit.

    Falls back to clause boundaries, then word boundaries, then fixed cuts.
    Concatenating the pieces always yields the original line.
    """

    if len(text) <= limit:
        return [text]

    pieces: List[str] = []
    for sentence in _consume_pattern(SENTENCE_PATTERN, text):
        if len(sentence) <= limit:
            pieces.append(sentence)
            continue
        clauses = _consume_pattern(CLAUSE_PATTERN, sentence)
        if clauses and max(len(clause) for clause in clauses) <= limit:
            pieces.extend(clauses)
        else:
            pieces.extend(_split_words(sentence, limit))
    return _pack(pieces, limit)


class Segmenter:
    """Expands OriginalUnits into atomic segments that remember their origin.

    A unit is split only when it contains line breaks: every line becomes a
    segment and blank lines become empty-line placeholders that are never sent
    to a backend. With ``max_segment_chars`` long lines are split further.
    """

    def __init__(self, max_segment_chars: Optional[int] = None) -> None:
        if max_segment_chars is not None and max_segment_chars < 1:
            raise ValidationError("max_segment_chars must be at least 1.")
        self.max_segment_chars = max_segment_chars

    def expand(self, units: Sequence[OriginalUnit]) -> List[ExpandedSegment]:
        segments: List[ExpandedSegment] = []
        for position, unit in enumerate(units):
            if unit is None or unit.raw_text is None:
                raise ValidationError(f"Text unit {position} has no text.")
            if unit.index != position:
                raise ValidationError(
                    f"Text unit at position {position} carries index {unit.index}."
                )
            lines = unit.raw_text.split("\n") if unit.is_multiline else [unit.raw_text]
            for line_index, line in enumerate(lines):
                if not line.strip():
                    segments.append(
                        ExpandedSegment(
                            index=len(segments),
                            text="",
                            original_index=unit.index,
                            is_empty_line=True,
                            line_index=line_index,
                        )
                    )
                    continue
                for piece in self._split(line):
                    segments.append(
                        ExpandedSegment(
                            index=len(segments),
                            text=piece,
                            original_index=unit.index,
                            line_index=line_index,
                        )
                    )
        logger.debug("Expanded %d units into %d segments.", len(units), len(segments))
        return segments

    def _split(self, line: str) -> List[str]:
        if self.max_segment_chars is None:
            return [line]
        return split_line(line, self.max_segment_chars)


class BatchStrategy(Enum):
    """Batch grouping strategies."""

    SINGLE = "single"
    SMART = "smart"
    FIXED = "fixed"
    CHARACTER_BUDGET = "character-budget"

    @classmethod
    def parse(cls, value: "BatchStrategy | str") -> "BatchStrategy":
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower().replace("_", "-")
        for strategy in cls:
            if strategy.value == normalized:
                return strategy
        raise ValidationError(f"Unknown batch strategy '{value}'.")


def compute_complexity(text: str) -> int:
    """Heuristic cost of a segment used to size smart batches."""

    if not text:
        return 0
    sentences = len(SENTENCE_END_PATTERN.findall(text))
    words = len(text.split())
    score = min(len(text) * 0.5, 100) + sentences * 2 + min(words * 0.5, 20)
    return int(math.floor(score + 0.5))


class BatchPlanner:
    """Groups segments into batches; every strategy preserves order and coverage."""

    def __init__(
        self,
        strategy: BatchStrategy | str = BatchStrategy.SMART,
        *,
        optimal_size: int = 25,
        max_complexity: int = 400,
        char_budget: Optional[int] = None,
        balanced: bool = False,
    ) -> None:
        self.strategy = BatchStrategy.parse(strategy)
        if optimal_size < 1:
            raise ValidationError("optimal_size must be at least 1.")
        if max_complexity <= 0:
            raise ValidationError("max_complexity must be positive.")
        if char_budget is not None and char_budget < 1:
            raise ValidationError("char_budget must be at least 1.")
        if self.strategy is BatchStrategy.CHARACTER_BUDGET and char_budget is None:
            raise ValidationError("The character-budget strategy needs a char_budget.")
        self.optimal_size = optimal_size
        self.max_complexity = max_complexity
        self.char_budget = char_budget
        self.balanced = balanced

    def plan(self, segments: Sequence[ExpandedSegment]) -> List[Batch]:
        if not segments:
            return []
        if self.strategy is BatchStrategy.SINGLE:
            groups = [list(segments)]
        elif self.strategy is BatchStrategy.SMART:
            groups = self._smart(segments)
        elif self.strategy is BatchStrategy.FIXED:
            groups = self._fixed(segments)
        else:
            groups = self._character_budget(segments)
        batches = [
            Batch(batch_index=index, segments=group)
            for index, group in enumerate(groups)
        ]
        logger.debug(
            "Planned %d %s batches for %d segments.",
            len(batches),
            self.strategy.value,
            len(segments),
        )
        return batches

    def _smart(self, segments: Sequence[ExpandedSegment]) -> List[List[ExpandedSegment]]:
        complexities = [compute_complexity(segment.text) for segment in segments]
        total = sum(complexities)
        if (
            len(segments) <= min(SMART_SINGLE_BATCH_SEGMENTS, self.optimal_size)
            or total < min(SMART_SINGLE_BATCH_COMPLEXITY, self.max_complexity)
        ):
            return [list(segments)]

        groups: List[List[ExpandedSegment]] = []
        current: List[ExpandedSegment] = []
        running = 0
        for segment, complexity in zip(segments, complexities):
            if current and (
                len(current) >= self.optimal_size
                or running + complexity > self.max_complexity
            ):
                groups.append(current)
                current = []
                running = 0
            current.append(segment)
            running += complexity
        if current:
            groups.append(current)
        return groups

    def _fixed(self, segments: Sequence[ExpandedSegment]) -> List[List[ExpandedSegment]]:
        size = self.optimal_size
        return [list(segments[start:start + size]) for start in range(0, len(segments), size)]

    def _character_budget(
        self, segments: Sequence[ExpandedSegment]
    ) -> List[List[ExpandedSegment]]:
        budget = self.char_budget or 1
        total = sum(len(segment.text) for segment in segments)
        if total <= budget:
            return [list(segments)]

        target = budget
        if self.balanced:
            ideal_count = math.ceil(total / budget)
            balanced_size = math.ceil(total / min(ideal_count + 1, len(segments)))
            target = min(balanced_size, budget)

        groups: List[List[ExpandedSegment]] = []
        current: List[ExpandedSegment] = []
        running = 0
        for segment in segments:
            size = len(segment.text)
            if current and running + size > target:
                groups.append(current)
                current = []
                running = 0
            if size > target:
                groups.append([segment])
                continue
            current.append(segment)
            running += size
        if current:
            groups.append(current)
        return groups
