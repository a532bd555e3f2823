"""Normalisation of heterogeneous inference results.

Gradio apps differ in what ``predict`` hands back. Some return a plain
string, some return a tuple whose later slots carry the updated chatbot
and state histories, others return nested dicts and lists with the text
buried somewhere inside. :func:`normalize_result` sorts a raw result
into one of three shapes, checked in this order:

1. :class:`PlainText` when the result itself is a string.
2. :class:`HistoryUpdate` when slot 2 (state) or slot 1 (chatbot) of the
   result sequence, or of its ``data`` sequence, is history-shaped.
3. :class:`NestedContainer` for everything else; its reply comes from
   :func:`extract_text`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence, Tuple, Union

from .history import ConversationTurn

TEXT_FIELDS = ("response", "text", "output")
# Slot 2 holds the session state, slot 1 the chatbot component; state wins.
HISTORY_SLOTS = (2, 1)


@dataclass(frozen=True)
class PlainText:
    text: str

    @property
    def reply(self) -> str:
        return self.text


@dataclass(frozen=True)
class HistoryUpdate:
    turns: Tuple[ConversationTurn, ...]

    @property
    def reply(self) -> str:
        if not self.turns:
            return ""
        last = self.turns[-1].assistant_text
        return last if isinstance(last, str) else ("" if last is None else str(last))


@dataclass(frozen=True)
class NestedContainer:
    raw: Any

    @property
    def reply(self) -> str:
        return extract_text(self.raw)


InferenceResult = Union[PlainText, HistoryUpdate, NestedContainer]


def normalize_result(raw: Any) -> InferenceResult:
    """Classify ``raw`` into a :data:`InferenceResult`."""
    if isinstance(raw, str):
        return PlainText(raw)
    history = find_history(raw)
    if history is not None:
        return HistoryUpdate(tuple(ConversationTurn(*pair) for pair in history))
    return NestedContainer(raw)


def find_history(raw: Any) -> Optional[Sequence[Sequence[Any]]]:
    """Return the first history-shaped slot of ``raw``, if any."""
    container = _slot_container(raw)
    if container is None:
        return None
    for index in HISTORY_SLOTS:
        if index < len(container) and is_history(container[index]):
            return container[index]
    return None


def is_history(value: Any) -> bool:
    """True for a list of two-item pairs (an empty list qualifies)."""
    if not isinstance(value, (list, tuple)):
        return False
    return all(isinstance(pair, (list, tuple)) and len(pair) == 2 for pair in value)


def extract_text(value: Any) -> str:
    """Depth-first text extraction, newline-joined, skipping empty leaves."""
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        for key in TEXT_FIELDS:
            candidate = value.get(key)
            if isinstance(candidate, str) and candidate:
                return candidate
        nested = value.get("data")
        if _is_sequence(nested):
            return _join(nested)
        return _join(list(value.values()))
    if _is_sequence(value):
        return _join(value)
    return ""


def _join(items: Sequence[Any]) -> str:
    return "\n".join(part for part in (extract_text(item) for item in items) if part)


def _is_sequence(value: Any) -> bool:
    return isinstance(value, (list, tuple))


def _slot_container(raw: Any) -> Optional[Sequence[Any]]:
    if _is_sequence(raw):
        return raw
    if isinstance(raw, Mapping) and _is_sequence(raw.get("data")):
        return raw["data"]
    return None
