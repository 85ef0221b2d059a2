"""Bounded multi-turn conversation log.

Append-only, capped at HISTORY_CAP entries. When the cap is exceeded every
system entry survives and only the most recent non-system entries are kept,
so the model never loses its standing instructions.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator

from storyloom.llm import ChatMessage
from storyloom.models import ConversationMessage, Role

logger = logging.getLogger(__name__)

HISTORY_CAP = 20


class ConversationHistory:
    def __init__(
        self,
        messages: Iterable[ConversationMessage] = (),
        cap: int = HISTORY_CAP,
    ) -> None:
        if cap < 1:
            raise ValueError("History cap must be at least 1")
        self._cap = cap
        self._messages: list[ConversationMessage] = list(messages)
        self._trim()

    @property
    def cap(self) -> int:
        return self._cap

    @property
    def messages(self) -> list[ConversationMessage]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[ConversationMessage]:
        return iter(list(self._messages))

    def has_system(self) -> bool:
        return any(m.role == "system" for m in self._messages)

    def append(self, role: Role, content: str, chapter: int | None = None) -> ConversationMessage:
        msg = ConversationMessage(role=role, content=content, chapter=chapter)
        self._messages.append(msg)
        self._trim()
        return msg

    def reset(self) -> None:
        """Forget everything. Only called when a new story session begins."""
        self._messages = []

    def to_chat(self) -> list[ChatMessage]:
        return [{"role": m.role, "content": m.content} for m in self._messages]

    def _trim(self) -> None:
        if len(self._messages) <= self._cap:
            return
        system_idx = [i for i, m in enumerate(self._messages) if m.role == "system"]
        # More system entries than the cap: the newest ones win.
        system_idx = system_idx[-self._cap:]
        room = self._cap - len(system_idx)
        other_idx = [i for i, m in enumerate(self._messages) if m.role != "system"]
        keep = set(system_idx)
        if room > 0:
            keep.update(other_idx[-room:])
        dropped = len(self._messages) - len(keep)
        self._messages = [m for i, m in enumerate(self._messages) if i in keep]
        logger.debug("history trimmed: dropped=%d kept=%d", dropped, len(self._messages))
