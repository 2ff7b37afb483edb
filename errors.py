from __future__ import annotations


class SyncError(Exception):
    """Base class for failures raised by the sync engine."""

    def __init__(
        self,
        message: str,
        *,
        item_id: int | None = None,
        stage: str | None = None,
    ) -> None:
        super().__init__(message)
        self.item_id = item_id
        self.stage = stage

    def describe(self) -> str:
        parts = [type(self).__name__]
        if self.item_id is not None:
            parts.append(f"item={self.item_id}")
        if self.stage:
            parts.append(f"stage={self.stage}")
        return f"{' '.join(parts)}: {self}"


class NotFound(SyncError):
    pass


class SyncTimeout(SyncError):
    pass


class AuthRejected(SyncError):
    pass


class PathTraversal(SyncError):
    pass


class ChunkTooLarge(SyncError):
    pass


class FilesystemFailure(SyncError):
    pass


class ProtocolFailure(SyncError):
    pass


class PublishRollbackFailed(FilesystemFailure):
    """The target directory could not be restored after a failed publish."""
