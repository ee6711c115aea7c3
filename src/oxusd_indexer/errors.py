from __future__ import annotations


class ProjectorError(Exception):
    """Base class for projector failures that must not be committed."""


class EventDecodeError(ProjectorError, ValueError):
    """Raised when an envelope or its parameters cannot be decoded."""


class StreamOrderError(ProjectorError):
    def __init__(
        self,
        *,
        stream_id: str,
        event_key: str,
        position: tuple[int, int],
        cursor: tuple[int, int],
    ) -> None:
        self.stream_id = stream_id
        self.event_key = event_key
        self.position = position
        self.cursor = cursor
        super().__init__(
            f"stream_order_violation stream_id={stream_id} event_key={event_key} "
            f"position={position[0]}:{position[1]} cursor={cursor[0]}:{cursor[1]}"
        )


class ProjectionStorageError(ProjectorError):
    def __init__(self, event_key: str, cause: BaseException) -> None:
        self.event_key = event_key
        self.cause = cause
        super().__init__(f"projection_storage_failed event_key={event_key}: {cause}")


class AppendOnlyViolationError(ProjectorError):
    """Raised when an append-only record would be overwritten."""
