"""ModelManager: storage layout, index consistency and the cross-process lock.

Two sources of truth are kept consistent here: the per-model directories
under the storage root and the index file beside them.

* ``open`` and ``reload`` drop index entries whose directory is missing and
  treat directories without an entry as not yet registered.
* ``register`` and ``remove`` take an exclusive advisory lock on
  ``model_index.lock``, re-read the index from disk, apply the change and
  write it back atomically before releasing the lock.
* ``lookup``, ``list`` and ``verify`` never lock and never re-read the file;
  they see the index as of the last ``open``, ``reload`` or mutation made by
  this manager.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import stat
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from filelock import FileLock, Timeout
from pydantic import ValidationError

from si_models.errors import (
    IncompleteDownloadError,
    IndexLockedError,
    ModelAlreadyExistsError,
    ModelNotFoundError,
    StorageUnavailableError,
)
from si_models.models.index import ModelIndex
from si_models.types import (
    DEFAULT_LOCK_TIMEOUT,
    INDEX_FILENAME,
    LOCK_FILENAME,
    FileMismatch,
    ModelFile,
    ModelInfo,
    storage_dirname,
    validate_model_id,
)

logger = logging.getLogger(__name__)

SourceFile = ModelFile | Mapping[str, Any]

_HASH_CHUNK = 1 << 20


class ModelManager:
    """Registry façade over one storage root.

    Create instances with :meth:`open`. Every mutating call is synchronous
    end to end: lock, re-read, mutate, atomic write, unlock.
    """

    def __init__(
        self,
        storage_root: Path,
        index: ModelIndex,
        *,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        verify_hashes: bool = False,
    ) -> None:
        self.storage_root = storage_root
        self.index = index
        self.lock_timeout = lock_timeout
        self.verify_hashes = verify_hashes
        self._lock = FileLock(str(self.lock_path))

    # -- construction -------------------------------------------------------

    @classmethod
    def open(
        cls,
        storage_root: str | os.PathLike[str],
        *,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        verify_hashes: bool = False,
    ) -> ModelManager:
        """Open (creating if needed) the registry rooted at *storage_root*.

        Raises ``StorageUnavailableError`` if the root cannot be created or
        read, and ``CorruptIndexError`` if the index file cannot be parsed
        (the file is left untouched for inspection).
        """
        root = Path(storage_root).expanduser().absolute()
        try:
            root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            msg = f"Cannot create storage root {root}: {exc}"
            raise StorageUnavailableError(msg) from exc
        if not os.access(root, os.R_OK | os.W_OK | os.X_OK):
            msg = f"Storage root {root} is not readable and writable"
            raise StorageUnavailableError(msg)

        manager = cls(
            root,
            ModelIndex(),
            lock_timeout=lock_timeout,
            verify_hashes=verify_hashes,
        )
        manager.index = manager._load_index()
        if manager._reconcile(manager.index):
            manager._persist_reconciliation()
        return manager

    # -- paths --------------------------------------------------------------

    @property
    def index_path(self) -> Path:
        return self.storage_root / INDEX_FILENAME

    @property
    def lock_path(self) -> Path:
        return self.storage_root / LOCK_FILENAME

    def model_dir(self, model_id: str) -> Path:
        """Return the storage directory for *model_id* (may not exist yet)."""
        return self.storage_root / storage_dirname(validate_model_id(model_id))

    # -- reads --------------------------------------------------------------

    def __contains__(self, model_id: object) -> bool:
        return model_id in self.index

    def lookup(self, model_id: str) -> ModelInfo:
        """Return the indexed entry for *model_id*. Does not touch the disk."""
        info = self.index.get(model_id)
        if info is None:
            raise ModelNotFoundError("Model is not registered", model_id=model_id)
        return info

    def list(self) -> list[ModelInfo]:
        return self.index.list()

    def verify(self, model_id: str, *, check_hashes: bool | None = None) -> list[FileMismatch]:
        """Compare the indexed manifest of *model_id* with the files on disk.

        Returns one :class:`FileMismatch` per missing or differing file; an
        empty list means the model is intact. Hashes are checked only for
        files with a recorded sha256, and only when *check_hashes* (or, when
        it is ``None``, the manager's ``verify_hashes`` setting) is true.
        The index is never modified.
        """
        info = self.lookup(model_id)
        check = self.verify_hashes if check_hashes is None else check_hashes
        base = self.model_dir(model_id)

        mismatches: list[FileMismatch] = []
        for f in info.files:
            target = base / f.path
            missing = FileMismatch(path=f.path, reason="missing", expected=f.size)
            try:
                st = target.stat()
            except OSError as exc:
                logger.debug("verify %s: cannot stat %s: %s", model_id, target, exc)
                mismatches.append(missing)
                continue
            if not stat.S_ISREG(st.st_mode):
                mismatches.append(missing)
            elif st.st_size != f.size:
                mismatches.append(
                    FileMismatch(path=f.path, reason="size", expected=f.size, actual=st.st_size)
                )
            elif check and f.sha256:
                try:
                    digest = _sha256(target)
                except OSError as exc:
                    logger.debug("verify %s: cannot read %s: %s", model_id, target, exc)
                    mismatches.append(missing)
                    continue
                if digest != f.sha256:
                    mismatches.append(
                        FileMismatch(path=f.path, reason="hash", expected=f.sha256, actual=digest)
                    )
        if mismatches:
            logger.debug("verify %s: %d mismatched file(s)", model_id, len(mismatches))
        return mismatches

    def resolve(self, model_id: str) -> list[Path]:
        """Return absolute paths of a verified model, ready for inference."""
        info = self.lookup(model_id)
        mismatches = self.verify(model_id)
        if mismatches:
            detail = "; ".join(m.describe() for m in mismatches)
            msg = f"Model files do not match the index: {detail}"
            raise IncompleteDownloadError(msg, model_id=model_id)
        base = self.model_dir(model_id)
        return [base / f.path for f in info.files]

    def reload(self) -> ModelIndex:
        """Re-read the index file, picking up other processes' mutations."""
        index = self._load_index()
        self._reconcile(index)
        self.index = index
        return index

    # -- mutations ----------------------------------------------------------

    def register(
        self,
        model_id: str,
        source_files: Iterable[SourceFile] | None = None,
        *,
        overwrite: bool = False,
        blocking: bool = True,
    ) -> ModelInfo:
        """Record the files under ``storage_root/<model_id>/`` in the index.

        *source_files* lists the relative paths and expected sizes the
        downloader wrote; when ``None`` the model directory is scanned and
        sizes are taken from disk. Every file is checked before the lock is
        taken, so a failing call has no side effects.

        Raises ``IncompleteDownloadError`` for missing, empty or wrongly
        sized files, ``ModelAlreadyExistsError`` if the id is registered and
        *overwrite* is false, and ``IndexLockedError`` if the lock cannot be
        acquired (immediately when *blocking* is false, otherwise after
        ``lock_timeout`` seconds).
        """
        info = self._build_info(model_id, source_files)

        with self._locked(model_id, blocking=blocking):
            index = self._load_index(model_id)
            if model_id in index and not overwrite:
                msg = "Model is already registered (use overwrite to replace it)"
                raise ModelAlreadyExistsError(msg, model_id=model_id)
            replaced = index.insert(model_id, info)
            self._save(index, model_id)

        if replaced:
            logger.warning("Replaced existing registration of %s", model_id)
        else:
            logger.info("Registered %s (%d files)", model_id, len(info.files))
        return info

    def remove(self, model_id: str, *, blocking: bool = True) -> ModelInfo:
        """Unregister *model_id* and delete its storage directory.

        The index is written before the directory is deleted: a crash in
        between leaves a stray directory, which ``register(overwrite=True)``
        recovers, never an entry pointing at missing files.
        """
        with self._locked(model_id, blocking=blocking):
            index = self._load_index(model_id)
            removed = index.remove(model_id)
            self._save(index, model_id)
        logger.info("Removed %s from the index", model_id)

        target = self.model_dir(model_id)
        try:
            shutil.rmtree(target)
        except FileNotFoundError:
            logger.debug("Storage directory %s was already gone", target)
        except OSError as exc:
            msg = f"Removed from the index but could not delete {target}: {exc}"
            raise StorageUnavailableError(msg, model_id=model_id) from exc
        return removed

    # -- internal helpers ---------------------------------------------------

    @contextmanager
    def _locked(self, model_id: str | None, *, blocking: bool) -> Iterator[None]:
        """Hold the index lock for the duration of the block."""
        try:
            if blocking:
                self._lock.acquire(timeout=self.lock_timeout)
            else:
                self._lock.acquire(blocking=False)
        except Timeout as exc:
            waited = f" after {self.lock_timeout:g}s" if blocking else ""
            msg = f"Index is locked by another process{waited} ({self.lock_path})"
            raise IndexLockedError(msg, model_id=model_id) from exc
        except OSError as exc:
            msg = f"Cannot open lock file {self.lock_path}: {exc}"
            raise StorageUnavailableError(msg, model_id=model_id) from exc
        logger.debug("Acquired index lock %s", self.lock_path)
        try:
            yield
        finally:
            self._lock.release()
            logger.debug("Released index lock %s", self.lock_path)

    def _load_index(self, model_id: str | None = None) -> ModelIndex:
        try:
            return ModelIndex.load(self.index_path)
        except OSError as exc:
            msg = f"Cannot read model index {self.index_path}: {exc}"
            raise StorageUnavailableError(msg, model_id=model_id) from exc

    def _save(self, index: ModelIndex, model_id: str | None) -> None:
        try:
            index.save(self.index_path)
        except OSError as exc:
            msg = f"Cannot write model index {self.index_path}: {exc}"
            raise StorageUnavailableError(msg, model_id=model_id) from exc
        self.index = index

    def _model_dirnames(self) -> set[str]:
        try:
            return {
                entry.name
                for entry in self.storage_root.iterdir()
                if entry.is_dir() and not entry.name.startswith(".")
            }
        except OSError as exc:
            msg = f"Cannot read storage root {self.storage_root}: {exc}"
            raise StorageUnavailableError(msg) from exc

    def _reconcile(self, index: ModelIndex, *, quiet: bool = False) -> list[str]:
        """Drop entries whose directory is gone. Returns the dropped ids."""
        dirnames = self._model_dirnames()
        dropped = [mid for mid in index.models if storage_dirname(mid) not in dirnames]
        for model_id in dropped:
            index.remove(model_id)
            if not quiet:
                logger.warning(
                    "Dropping %s from the index: directory %s is missing",
                    model_id,
                    self.storage_root / storage_dirname(model_id),
                )
        if not quiet:
            registered = {storage_dirname(mid) for mid in index.models}
            for name in sorted(dirnames - registered):
                logger.info("Directory %s is not registered", self.storage_root / name)
        return dropped

    def _persist_reconciliation(self) -> None:
        try:
            with self._locked(None, blocking=False):
                index = self._load_index()
                if self._reconcile(index, quiet=True):
                    self._save(index, None)
                else:
                    self.index = index
        except IndexLockedError:
            logger.info("Index is locked; reconciliation kept in memory until the next open")

    def _build_info(self, model_id: str, source_files: Iterable[SourceFile] | None) -> ModelInfo:
        validate_model_id(model_id)
        base = self.model_dir(model_id)
        if source_files is None:
            declared = ModelInfo(model_id=model_id, files=tuple(self._scan(model_id, base)))
        else:
            files = []
            for entry in source_files:
                if isinstance(entry, ModelFile):
                    files.append(entry)
                    continue
                try:
                    files.append(ModelFile.model_validate(entry))
                except ValidationError as exc:
                    msg = f"Invalid file entry {entry!r}: {exc.errors()[0]['msg']}"
                    raise IncompleteDownloadError(msg, model_id=model_id) from exc
            declared = ModelInfo(model_id=model_id, files=tuple(files))
            if not base.is_dir():
                msg = f"Model directory {base} does not exist"
                raise IncompleteDownloadError(msg, model_id=model_id)
            if not declared.files:
                raise IncompleteDownloadError("No files given to register", model_id=model_id)
        checked = tuple(self._check_file(model_id, base, f) for f in declared.files)
        return declared.model_copy(update={"files": checked})

    def _scan(self, model_id: str, base: Path) -> list[ModelFile]:
        if not base.is_dir():
            raise IncompleteDownloadError(f"Model directory {base} does not exist", model_id=model_id)
        files = []
        try:
            for p in sorted(base.rglob("*")):
                rel = p.relative_to(base)
                if any(part.startswith(".") for part in rel.parts) or not p.is_file():
                    continue
                files.append(ModelFile(path=rel.as_posix(), size=p.stat().st_size))
        except OSError as exc:
            msg = f"Cannot read model directory {base}: {exc}"
            raise IncompleteDownloadError(msg, model_id=model_id) from exc
        if not files:
            raise IncompleteDownloadError(f"Model directory {base} is empty", model_id=model_id)
        return files

    def _check_file(self, model_id: str, base: Path, f: ModelFile) -> ModelFile:
        target = base / f.path
        try:
            st = target.stat()
        except FileNotFoundError:
            raise IncompleteDownloadError(f"File {f.path!r} is missing", model_id=model_id) from None
        except OSError as exc:
            msg = f"Cannot stat {f.path!r}: {exc.strerror or exc}"
            raise IncompleteDownloadError(msg, model_id=model_id) from exc
        if not stat.S_ISREG(st.st_mode):
            raise IncompleteDownloadError(f"{f.path!r} is not a regular file", model_id=model_id)
        if st.st_size == 0 and f.size > 0:
            msg = f"File {f.path!r} is empty, expected {f.size} bytes"
            raise IncompleteDownloadError(msg, model_id=model_id)
        if st.st_size != f.size:
            msg = f"File {f.path!r} has {st.st_size} bytes, expected {f.size}"
            raise IncompleteDownloadError(msg, model_id=model_id)
        if not self.verify_hashes:
            return f
        try:
            digest = _sha256(target)
        except OSError as exc:
            msg = f"Cannot read {f.path!r}: {exc.strerror or exc}"
            raise IncompleteDownloadError(msg, model_id=model_id) from exc
        if f.sha256 and digest != f.sha256:
            msg = f"File {f.path!r} has sha256 {digest}, expected {f.sha256}"
            raise IncompleteDownloadError(msg, model_id=model_id)
        return f.model_copy(update={"sha256": digest})


def _sha256(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as fh:
        while chunk := fh.read(_HASH_CHUNK):
            h.update(chunk)
    return h.hexdigest()
