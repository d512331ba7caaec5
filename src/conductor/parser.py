from __future__ import annotations

import re
from dataclasses import dataclass

NUMBERED_MARKER = re.compile(r"(?:(?<=\s)|^)\(?\d{1,2}[.)]\s+")
LINE_ITEM = re.compile(r"^\s*(?:[-*•]|\(?\d{1,2}[.)])\s+(.+)$")
SEPARATOR = re.compile(
    r"(\s*[;,]\s*(?:and\s+then|and\s+also|then|and|also|after\s+that|afterwards)?\s+"
    r"|\s*[;,]\s*"
    r"|\s+(?:and\s+then|and\s+also|then|and|also|after\s+that|afterwards)\s+)",
    re.IGNORECASE,
)
SEQUENCER = re.compile(r"\b(then|after\s+that|afterwards)\b", re.IGNORECASE)
TRAILING_PUNCTUATION = " \t\r\n.;,:"


@dataclass(frozen=True, slots=True)
class Fragment:
    text: str
    # True when the fragment was introduced by a sequencer ("then", "after that").
    sequenced: bool = False


class TaskParser:
    """Splits one instruction into at most ``max_tasks`` candidate task texts."""

    def __init__(self, *, max_tasks: int = 10, min_fragment_length: int = 6) -> None:
        self.max_tasks = max(1, int(max_tasks))
        self.min_fragment_length = max(1, int(min_fragment_length))

    def parse(self, instruction: str) -> list[str]:
        return [fragment.text for fragment in self.parse_fragments(instruction)]

    def parse_fragments(self, instruction: str) -> list[Fragment]:
        text = (instruction or "").strip()
        if not text:
            return []

        fragments = self._split_list_items(text)
        if len(fragments) < 2:
            fragments = self._split_connectors(text)
        if len(fragments) < 2:
            fragments = [Fragment(self._clean(text))]
        return fragments[: self.max_tasks]

    @staticmethod
    def _clean(text: str) -> str:
        return text.strip().strip(TRAILING_PUNCTUATION).strip()

    def _split_list_items(self, text: str) -> list[Fragment]:
        lines = [line for line in text.splitlines() if line.strip()]
        line_items = [match.group(1) for line in lines if (match := LINE_ITEM.match(line))]
        if len(line_items) >= 2:
            return [Fragment(cleaned) for item in line_items if (cleaned := self._clean(item))]

        markers = list(NUMBERED_MARKER.finditer(text))
        if len(markers) < 2:
            return []
        fragments: list[Fragment] = []
        for index, marker in enumerate(markers):
            end = markers[index + 1].start() if index + 1 < len(markers) else len(text)
            cleaned = self._clean(text[marker.end() : end])
            if cleaned:
                fragments.append(Fragment(cleaned))
        return fragments

    def _split_connectors(self, text: str) -> list[Fragment]:
        parts = SEPARATOR.split(text)
        fragments: list[Fragment] = []
        separator = ""
        for index, part in enumerate(parts):
            if index % 2 == 1:
                separator = part
                continue
            cleaned = self._clean(part)
            if len(cleaned) < self.min_fragment_length:
                continue
            fragments.append(Fragment(cleaned, sequenced=bool(SEQUENCER.search(separator))))
            separator = ""
        return fragments
