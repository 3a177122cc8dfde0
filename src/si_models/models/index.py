"""The persisted model catalog and its atomic on-disk form."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from si_models.errors import (
    CorruptIndexError,
    InvalidModelIdError,
    ModelNotFoundError,
    ModelRegistryError,
)
from si_models.types import INDEX_VERSION, ModelInfo

logger = logging.getLogger(__name__)


@dataclass
class ModelIndex:
    """Mapping of model id to :class:`ModelInfo`.

    Filesystem-agnostic apart from :meth:`load` and :meth:`save`; removing an
    entry never touches the model's storage directory.
    """

    models: dict[str, ModelInfo] = field(default_factory=dict)

    # -- reads --------------------------------------------------------------

    def __len__(self) -> int:
        return len(self.models)

    def __contains__(self, model_id: object) -> bool:
        return model_id in self.models

    def get(self, model_id: str) -> ModelInfo | None:
        return self.models.get(model_id)

    def list(self) -> list[ModelInfo]:
        """Return all entries sorted by ``model_id``."""
        return [self.models[k] for k in sorted(self.models)]

    # -- mutations ----------------------------------------------------------

    def insert(self, model_id: str, info: ModelInfo) -> bool:
        """Add or overwrite *model_id*. Returns ``True`` if an entry existed."""
        if info.model_id != model_id:
            msg = f"Key {model_id!r} does not match ModelInfo id {info.model_id!r}"
            raise InvalidModelIdError(msg, model_id=model_id)
        existed = model_id in self.models
        self.models[model_id] = info
        return existed

    def remove(self, model_id: str) -> ModelInfo:
        """Remove and return *model_id*. Raises ``ModelNotFoundError``."""
        try:
            return self.models.pop(model_id)
        except KeyError:
            raise ModelNotFoundError("Model is not registered", model_id=model_id) from None

    # -- persistence --------------------------------------------------------

    def to_records(self) -> dict[str, Any]:
        return {k: self.models[k].to_record() for k in sorted(self.models)}

    def to_json(self) -> str:
        data = {"version": INDEX_VERSION, "models": self.to_records()}
        return json.dumps(data, indent=2, ensure_ascii=False) + "\n"

    @classmethod
    def from_json(cls, text: str, *, path: Path) -> ModelIndex:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise CorruptIndexError(path, f"invalid JSON ({exc})") from exc

        if not isinstance(data, dict):
            raise CorruptIndexError(path, "top-level value is not an object")
        version = data.get("version", INDEX_VERSION)
        if not isinstance(version, int):
            raise CorruptIndexError(path, f"invalid version {version!r}")
        if version > INDEX_VERSION:
            logger.debug("Index %s has newer version %d; reading known fields", path, version)

        raw_models = data.get("models")
        if not isinstance(raw_models, dict):
            raise CorruptIndexError(path, "'models' is missing or not an object")

        models: dict[str, ModelInfo] = {}
        for model_id, record in raw_models.items():
            if not isinstance(record, dict):
                raise CorruptIndexError(path, f"entry {model_id!r} is not an object")
            try:
                models[model_id] = ModelInfo.from_record(model_id, record)
            except (ValidationError, ModelRegistryError) as exc:
                raise CorruptIndexError(path, f"entry {model_id!r}: {exc}") from exc
        return cls(models=models)

    @classmethod
    def load(cls, path: Path) -> ModelIndex:
        """Read the index at *path*; a missing file yields an empty index."""
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug("Model index not found at %s, starting empty", path)
            return cls()
        except UnicodeDecodeError as exc:
            raise CorruptIndexError(path, f"not UTF-8 text ({exc})") from exc
        logger.debug("Reading model index from %s", path)
        return cls.from_json(text, path=path)

    def save(self, path: Path) -> None:
        """Write the index atomically: temp file, fsync, rename over *path*.

        The temp file lives in the destination directory so the rename is a
        single same-filesystem operation. On any failure the previous file is
        left untouched and the temp file is removed.
        """
        logger.debug("Saving model index (%d models) to %s", len(self), path)
        payload = self.to_json()
        tmp_path: Path | None = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=path.parent,
                prefix=f".{path.name}.",
                suffix=".tmp",
                delete=False,
            ) as f:
                tmp_path = Path(f.name)
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
            tmp_path = None
        finally:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)
        _fsync_dir(path.parent)


def _fsync_dir(directory: Path) -> None:
    """Flush the directory entry so the rename itself survives a crash."""
    if os.name != "posix":
        return
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)
