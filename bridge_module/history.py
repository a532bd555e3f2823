"""Per-agent conversation memory."""

from __future__ import annotations

from typing import Iterable, List, NamedTuple, Tuple


class ConversationTurn(NamedTuple):
    user_text: str
    assistant_text: str


class ConversationHistory:
    """Ordered (user, assistant) pairs for one agent.

    The remote endpoint may return its own copy of the conversation, in
    which case it replaces ours wholesale via :meth:`replace_all`.
    """

    def __init__(self, turns: Iterable[Tuple[str, str]] = ()) -> None:
        self._turns: List[ConversationTurn] = [ConversationTurn(*turn) for turn in turns]

    def append(self, turn: Tuple[str, str]) -> None:
        self._turns.append(ConversationTurn(*turn))

    def replace_all(self, turns: Iterable[Tuple[str, str]]) -> None:
        self._turns = [ConversationTurn(*turn) for turn in turns]

    def snapshot(self) -> Tuple[ConversationTurn, ...]:
        return tuple(self._turns)

    def to_wire(self) -> List[List[str]]:
        """Return the history as nested lists, the shape Gradio chatbots expect."""
        return [list(turn) for turn in self._turns]

    def __len__(self) -> int:
        return len(self._turns)
