"""Shared value types for the si model registry."""

from __future__ import annotations

import os
import re
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from si_models.errors import DuplicateFileError, InvalidModelIdError, InvalidPathError

# ---------------------------------------------------------------------------
# Default constants
# ---------------------------------------------------------------------------

DEFAULT_MODELS_DIR = Path.home() / ".cache" / "si" / "models"
DEFAULT_LOCK_TIMEOUT = 10.0
DEFAULT_HUB_ENDPOINT = "https://huggingface.co"
DEFAULT_HUB_REVISION = "main"
DEFAULT_DOWNLOAD_WORKERS = 4

INDEX_FILENAME = "model_index.json"
LOCK_FILENAME = "model_index.lock"
INDEX_VERSION = 1

# One or two "/"-separated segments, each starting alphanumeric.
_MODEL_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*(/[A-Za-z0-9][A-Za-z0-9._-]*)?$")


def validate_model_id(value: str) -> str:
    """Return *value* if it is a usable model id, else raise ``InvalidModelIdError``."""
    if not value:
        raise InvalidModelIdError("Model id must not be empty")
    if not _MODEL_ID_RE.match(value) or ".." in value or "--" in value:
        raise InvalidModelIdError(f"Invalid model id {value!r}", model_id=value)
    return value


def storage_dirname(model_id: str) -> str:
    """Return the storage subdirectory name for *model_id*.

    Namespaced hub ids (``org/name``) are flattened to ``org--name``;
    plain ids map to themselves.
    """
    return model_id.replace("/", "--")


# ---------------------------------------------------------------------------
# ModelFile
# ---------------------------------------------------------------------------


class ModelFile(BaseModel):
    """One file of a model, relative to the model's storage subdirectory."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    path: str
    size: int = Field(ge=0)
    sha256: str | None = None

    @field_validator("path", mode="before")
    @classmethod
    def _check_path(cls, value: Any) -> Any:
        if isinstance(value, os.PathLike):
            value = os.fspath(value)
        if not isinstance(value, str):
            return value  # let pydantic report the type error
        if not value or value in (".", "./"):
            raise InvalidPathError(f"File path must not be empty: {value!r}")
        if "\\" in value:
            raise InvalidPathError(f"File path must use '/' separators: {value!r}")
        if PurePosixPath(value).is_absolute() or PureWindowsPath(value).anchor:
            raise InvalidPathError(f"File path must be relative: {value!r}")
        if ".." in value.split("/"):
            raise InvalidPathError(f"File path escapes the model directory: {value!r}")
        return PurePosixPath(value).as_posix()

    @field_validator("sha256")
    @classmethod
    def _normalize_hash(cls, value: str | None) -> str | None:
        return value.lower() if value else None

    def to_record(self) -> dict[str, Any]:
        """Serialize to the index-file representation."""
        return self.model_dump(exclude_none=True)


# ---------------------------------------------------------------------------
# ModelInfo
# ---------------------------------------------------------------------------


class ModelInfo(BaseModel):
    """A model: its identifier and the ordered manifest of its files."""

    model_config = ConfigDict(frozen=True, extra="ignore", protected_namespaces=())

    model_id: str
    files: tuple[ModelFile, ...] = ()

    @field_validator("model_id")
    @classmethod
    def _check_model_id(cls, value: str) -> str:
        return validate_model_id(value)

    @model_validator(mode="after")
    def _check_unique_paths(self) -> ModelInfo:
        seen: set[str] = set()
        for f in self.files:
            if f.path in seen:
                raise DuplicateFileError(
                    f"Duplicate file path {f.path!r}", model_id=self.model_id
                )
            seen.add(f.path)
        return self

    @property
    def dirname(self) -> str:
        return storage_dirname(self.model_id)

    @property
    def total_size(self) -> int:
        return sum(f.size for f in self.files)

    def to_record(self) -> dict[str, Any]:
        """Serialize to the index-file representation (id is the map key)."""
        return {"files": [f.to_record() for f in self.files]}

    @classmethod
    def from_record(cls, model_id: str, record: dict[str, Any]) -> ModelInfo:
        return cls.model_validate({"model_id": model_id, "files": record.get("files", [])})


# ---------------------------------------------------------------------------
# Verification results
# ---------------------------------------------------------------------------


class FileMismatch(BaseModel):
    """A file whose on-disk state does not match its index entry."""

    model_config = ConfigDict(frozen=True)

    path: str
    reason: Literal["missing", "size", "hash"]
    expected: int | str | None = None
    actual: int | str | None = None

    def describe(self) -> str:
        if self.reason == "missing":
            return f"{self.path}: missing"
        return f"{self.path}: {self.reason} mismatch (expected {self.expected}, got {self.actual})"
