"""Bind reassembled translations onto destination text holders."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .structures import MatchCandidate, TextHolder

logger = logging.getLogger(__name__)

WHITESPACE = re.compile(r"\s+")

DEFAULT_FUZZY_THRESHOLD = 30.0
SHORT_TEXT_LIMIT = 64
RESCUE_MIN_CHARS = 30

LENGTH_GAIN = 1.10
WORD_GAIN = 1.20
UNIQUE_CHAR_GAIN = 1.10


def _normalize_spaces(text: str) -> str:
    return WHITESPACE.sub(" ", text).strip()


def _compact(text: str) -> str:
    return WHITESPACE.sub("", text)


# Exact tiers, tried in order; the first hit wins.
EXACT_TIERS: List[Tuple[str, Callable[[str], str]]] = [
    ("exact", lambda text: text),
    ("trimmed", str.strip),
    ("normalized", _normalize_spaces),
    ("compact", _compact),
]


def levenshtein(left: str, right: str) -> int:
    """Classic edit distance with a rolling row."""

    if len(left) < len(right):
        left, right = right, left
    previous = list(range(len(right) + 1))
    for i, left_char in enumerate(left, start=1):
        current = [i]
        for j, right_char in enumerate(right, start=1):
            cost = 0 if left_char == right_char else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def similarity(holder_text: str, key: str) -> float:
    """Score (0-100) how likely a holder carries the given source text."""

    a, b = holder_text.strip(), key.strip()
    if not a or not b:
        return 0.0
    if a == b:
        return 100.0

    shorter, longer = (a, b) if len(a) <= len(b) else (b, a)
    if shorter in longer:
        return len(shorter) / len(longer) * 100

    a_words = set(a.lower().split())
    b_words = set(b.lower().split())
    union = a_words | b_words
    score = len(a_words & b_words) / len(union) * 100 if union else 0.0

    if len(longer) <= SHORT_TEXT_LIMIT:
        edit = (1 - levenshtein(a, b) / len(longer)) * 100
        score = max(score, edit)
    return score


def is_more_complete(current: str, candidate: str) -> bool:
    """Whether a streaming result is substantially richer than the applied one."""

    current, candidate = current.strip(), candidate.strip()
    if not current:
        return bool(candidate)
    if len(candidate) >= len(current) * LENGTH_GAIN:
        return True
    if len(candidate.split()) >= len(current.split()) * WORD_GAIN:
        return True
    return len(set(candidate.lower())) >= len(set(current.lower())) * UNIQUE_CHAR_GAIN


@dataclass
class AppliedTranslation:
    """What the engine last wrote into a holder."""

    text: str
    final: bool
    match_type: str
    source_key: str


@dataclass
class ApplyReport:
    """Outcome of one apply pass."""

    final: bool
    applied: List[Tuple[int, str]] = field(default_factory=list)
    kept: List[int] = field(default_factory=list)
    unmatched: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)

    @property
    def applied_count(self) -> int:
        return len(self.applied)


class _KeyIndex:
    """Lookup tables for the exact tiers; the first registered key wins."""

    def __init__(self, keys: Sequence[str]) -> None:
        self.tables: Dict[str, Dict[str, str]] = {name: {} for name, _ in EXACT_TIERS}
        for key in keys:
            for name, normalize in EXACT_TIERS:
                normalized = normalize(key)
                if normalized:
                    self.tables[name].setdefault(normalized, key)

    def lookup(self, text: str) -> Optional[Tuple[str, str]]:
        for name, normalize in EXACT_TIERS:
            normalized = normalize(text)
            if not normalized:
                continue
            key = self.tables[name].get(normalized)
            if key is not None:
                return key, name
        return None


class MatchAndApplyEngine:
    """Writes translations keyed by source text into the matching holders.

    Holder texts are snapshotted when the engine is created, so later passes
    still match against the source text after a holder has been rewritten.
    """

    def __init__(
        self,
        holders: Sequence[TextHolder],
        *,
        fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD,
    ) -> None:
        self.holders = list(holders)
        self.fuzzy_threshold = fuzzy_threshold
        self.originals = [holder.current_text() for holder in self.holders]
        self.applied: Dict[int, AppliedTranslation] = {}

    def apply(self, translations: Mapping[str, str], *, final: bool) -> ApplyReport:
        report = ApplyReport(final=final)
        assignments = self._assign(translations, final=final)
        leftover = set(translations) - {key for key, _ in assignments.values()}

        for index in range(len(self.holders)):
            if index not in assignments:
                # Streaming passes only cover part of the job; a holder is
                # unmatched there only while some offered key found no holder.
                if final or leftover:
                    report.unmatched.append(index)
                continue
            key, match_type = assignments[index]
            self._write(index, key, translations[key], match_type, final, report)

        logger.debug(
            "Applied %d %s translations (%d kept, %d unmatched).",
            report.applied_count,
            "final" if final else "streaming",
            len(report.kept),
            len(report.unmatched),
        )
        return report

    def _assign(self, translations: Mapping[str, str], *, final: bool) -> Dict[int, Tuple[str, str]]:
        keys = list(translations)
        index = _KeyIndex(keys)
        assignments: Dict[int, Tuple[str, str]] = {}

        for holder_index, original in enumerate(self.originals):
            if not original.strip():
                continue
            hit = index.lookup(original)
            if hit is not None:
                assignments[holder_index] = hit

        used = {key for key, _ in assignments.values()}
        for key in keys:
            if key in used:
                continue
            best = self._best_fuzzy_candidate(key, assignments)
            if best is not None:
                assignments[best.holder_index] = (key, best.match_type)
                used.add(key)

        if final:
            self._rescue(translations, keys, used, assignments)
        return assignments

    def _best_fuzzy_candidate(
        self, key: str, assignments: Mapping[int, Tuple[str, str]]
    ) -> Optional[MatchCandidate]:
        candidates = [
            MatchCandidate(holder_index=i, score=similarity(original, key), match_type="fuzzy")
            for i, original in enumerate(self.originals)
            if i not in assignments and original.strip()
        ]
        candidates = [c for c in candidates if c.score >= self.fuzzy_threshold]
        if not candidates:
            return None
        # Highest score first; earliest holder breaks ties.
        candidates.sort(key=lambda c: (-c.score, c.holder_index))
        return candidates[0]

    def _rescue(
        self,
        translations: Mapping[str, str],
        keys: Sequence[str],
        used: set,
        assignments: Dict[int, Tuple[str, str]],
    ) -> None:
        """Last resort: give blank holders the longest unassigned translations."""

        leftovers = sorted(
            (key for key in keys if key not in used),
            key=lambda key: len(translations[key].strip()),
            reverse=True,
        )
        for holder_index, original in enumerate(self.originals):
            if original.strip() or holder_index in assignments:
                continue
            if not leftovers or len(translations[leftovers[0]].strip()) <= RESCUE_MIN_CHARS:
                break
            key = leftovers.pop(0)
            used.add(key)
            assignments[holder_index] = (key, "rescue")
            logger.warning(
                "Rescue match: blank holder %d receives the unassigned translation of %r.",
                holder_index,
                key[:50],
            )

    def _write(
        self,
        index: int,
        key: str,
        text: str,
        match_type: str,
        final: bool,
        report: ApplyReport,
    ) -> None:
        existing = self.applied.get(index)
        if existing is not None and existing.text == text:
            existing.final = existing.final or final
            report.kept.append(index)
            return
        if existing is not None and not final:
            if existing.final or not is_more_complete(existing.text, text):
                report.kept.append(index)
                return

        try:
            self.holders[index].write(text)
        except Exception as exc:
            logger.warning("Could not write translation into holder %d: %s", index, exc)
            report.failed.append(index)
            report.unmatched.append(index)
            return
        self.applied[index] = AppliedTranslation(
            text=text, final=final, match_type=match_type, source_key=key
        )
        report.applied.append((index, match_type))

    def match_type_of(self, index: int) -> Optional[str]:
        applied = self.applied.get(index)
        return applied.match_type if applied else None
