"""Rebuild per-unit translations from per-segment results."""

from __future__ import annotations

import re
from itertools import groupby
from typing import Dict, List, Mapping, Sequence

from .structures import ExpandedSegment, OriginalUnit, ReassembledTranslation

EXCESS_BREAKS = re.compile(r"\n{3,}")


def collapse_blank_runs(text: str) -> str:
    """Collapse runs of three or more line breaks down to a paragraph break."""

    return EXCESS_BREAKS.sub("\n\n", text)


class Reassembler:
    """Turns a (possibly partial) segment → translation map into unit texts.

    Segments without a translation fall back to their source text, so the
    output is usable before the job completes.
    """

    def __init__(self, units: Sequence[OriginalUnit], segments: Sequence[ExpandedSegment]) -> None:
        self.units = list(units)
        self.segments = list(segments)
        self._lines: Dict[int, List[str]] = {
            unit.index: unit.raw_text.split("\n") for unit in self.units
        }

    def reassemble(
        self,
        translated: Mapping[int, str],
        *,
        touched_only: bool = False,
    ) -> ReassembledTranslation:
        result: ReassembledTranslation = {}
        for original_index, group in groupby(self.segments, key=lambda s: s.original_index):
            unit_segments = list(group)
            if touched_only and not any(s.index in translated for s in unit_segments):
                continue
            result[original_index] = self._rebuild_unit(original_index, unit_segments, translated)
        return result

    def by_source_text(
        self,
        translated: Mapping[int, str],
        *,
        touched_only: bool = False,
    ) -> Dict[str, str]:
        """Key the reassembled output by each unit's original text."""

        reassembled = self.reassemble(translated, touched_only=touched_only)
        keyed: Dict[str, str] = {}
        for unit in self.units:
            if unit.index in reassembled:
                keyed.setdefault(unit.raw_text, reassembled[unit.index])
        return keyed

    def _rebuild_unit(
        self,
        original_index: int,
        segments: Sequence[ExpandedSegment],
        translated: Mapping[int, str],
    ) -> str:
        source_lines = self._lines[original_index]
        rebuilt: List[str] = []
        for _, line_segments in groupby(segments, key=lambda s: s.line_index):
            pieces = list(line_segments)
            if pieces[0].is_empty_line:
                # Each blank line, whitespace-only included, becomes one bare line break.
                rebuilt.append("")
                continue
            rebuilt.append(
                "".join(translated.get(piece.index, piece.text) for piece in pieces)
            )
        text = "\n".join(rebuilt)
        if len(source_lines) > 1:
            text = collapse_blank_runs(text)
        return text
