"""Error taxonomy shared by the index, the manager and the CLI.

Every error carries a stable ``kind`` string and, where one applies, the
offending ``model_id`` so callers can format actionable messages.
"""

from __future__ import annotations

from pathlib import Path


class ModelRegistryError(Exception):
    """Base class for all expected registry failures."""

    kind = "RegistryError"

    def __init__(self, message: str, *, model_id: str | None = None) -> None:
        super().__init__(message)
        self.model_id = model_id

    def __str__(self) -> str:
        msg = super().__str__()
        if self.model_id is not None and self.model_id not in msg:
            return f"{self.model_id}: {msg}"
        return msg


# ---------------------------------------------------------------------------
# Validation (raised at construction time, never reach the index)
# ---------------------------------------------------------------------------


class InvalidPathError(ModelRegistryError):
    kind = "InvalidPath"


class InvalidModelIdError(ModelRegistryError):
    kind = "InvalidModelId"


class DuplicateFileError(ModelRegistryError):
    kind = "DuplicateFile"


# ---------------------------------------------------------------------------
# Fatal to ModelManager.open
# ---------------------------------------------------------------------------


class CorruptIndexError(ModelRegistryError):
    """The index file exists but cannot be parsed. The file is left in place."""

    kind = "CorruptIndex"

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"Corrupt model index at {path}: {reason}")
        self.path = path


class StorageUnavailableError(ModelRegistryError):
    kind = "StorageUnavailable"


# ---------------------------------------------------------------------------
# Business rules and recoverable conditions
# ---------------------------------------------------------------------------


class ModelAlreadyExistsError(ModelRegistryError):
    kind = "ModelAlreadyExists"


class IncompleteDownloadError(ModelRegistryError):
    kind = "IncompleteDownload"


class ModelNotFoundError(ModelRegistryError):
    kind = "NotFound"


class IndexLockedError(ModelRegistryError):
    kind = "IndexLocked"
