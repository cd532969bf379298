"""Single-slot backup of the history taken before each compaction."""

import copy
from datetime import UTC, datetime

from toolpilot.llm import Message


class CompressionBackup:
    """Holds the most recent pre-compaction message list.

    Storing again overwrites the previous backup.
    """

    def __init__(self) -> None:
        self._messages: list[Message] | None = None
        self._timestamp: datetime | None = None

    def store_backup(self, messages: list[Message]) -> None:
        self._messages = copy.deepcopy(list(messages))
        self._timestamp = datetime.now(UTC)

    def get_backup(self) -> list[Message] | None:
        if self._messages is None:
            return None
        return copy.deepcopy(self._messages)

    def has_backup(self) -> bool:
        return self._messages is not None

    @property
    def timestamp(self) -> datetime | None:
        return self._timestamp

    def clear(self) -> None:
        self._messages = None
        self._timestamp = None
