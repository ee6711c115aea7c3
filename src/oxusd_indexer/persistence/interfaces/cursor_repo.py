from __future__ import annotations

from typing import Protocol

from oxusd_indexer.domain.events import EventEnvelope


class CursorRepoProtocol(Protocol):
    def is_processed(self, event_key: str) -> bool: ...

    def mark_processed(self, envelope: EventEnvelope) -> None: ...

    def get_stream_cursor(self, stream_id: str) -> tuple[int, int] | None: ...

    def advance_stream_cursor(self, stream_id: str, position: tuple[int, int]) -> None: ...

    def list_stream_cursors(self) -> dict[str, tuple[int, int]]: ...
