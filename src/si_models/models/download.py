"""Download model files from the hub and register them with the manager."""

from __future__ import annotations

import os
import sys
import tempfile
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO
from urllib.parse import quote

import httpx

from si_models.errors import IncompleteDownloadError, ModelNotFoundError, ModelRegistryError
from si_models.models.manager import ModelManager
from si_models.types import DEFAULT_HUB_ENDPOINT, DEFAULT_HUB_REVISION, ModelFile, ModelInfo

_CHUNK_SIZE = 1 << 17
_MB = 1_048_576


@dataclass(frozen=True)
class RemoteFile:
    """A file listed in the hub manifest for a model."""

    path: str
    size: int | None = None
    sha256: str | None = None


@dataclass
class DownloadResult:
    """Outcome of one model in :func:`download_models`."""

    model_id: str
    info: ModelInfo | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class HubClient:
    """Thin wrapper over an ``httpx.Client`` for the model hub HTTP API."""

    def __init__(
        self,
        *,
        endpoint: str = DEFAULT_HUB_ENDPOINT,
        revision: str = DEFAULT_HUB_REVISION,
        token: str | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.revision = revision
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = client or httpx.Client(
            follow_redirects=True, timeout=httpx.Timeout(30, read=300)
        )
        self._headers = headers

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HubClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def fetch_manifest(self, model_id: str) -> list[RemoteFile]:
        """Return the files of *model_id* at the configured revision."""
        url = (
            f"{self.endpoint}/api/models/{model_id}"
            f"/revision/{quote(self.revision, safe='')}"
        )
        response = self._client.get(url, params={"blobs": "true"}, headers=self._headers)
        if response.status_code == 404:
            raise ModelNotFoundError("Model not found on the hub", model_id=model_id)
        response.raise_for_status()

        files: list[RemoteFile] = []
        for sibling in response.json().get("siblings", []):
            lfs = sibling.get("lfs") or {}
            files.append(
                RemoteFile(
                    path=sibling["rfilename"],
                    size=sibling.get("size", lfs.get("size")),
                    sha256=lfs.get("sha256"),
                )
            )
        return files

    def download_file(self, model_id: str, remote: RemoteFile, dest: Path) -> int:
        """Stream *remote* to *dest*, replacing it atomically. Returns bytes written.

        The body lands in a hidden ``.part`` file beside *dest*, which
        directory scans skip. It is fsynced and renamed over *dest* only once
        the transfer matched the advertised Content-Length.
        """
        url = (
            f"{self.endpoint}/{model_id}/resolve/"
            f"{quote(self.revision, safe='')}/{quote(remote.path)}"
        )
        dest.parent.mkdir(parents=True, exist_ok=True)

        fd, part = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.", suffix=".part")
        try:
            with os.fdopen(fd, "wb") as fh:
                expected, received, written = self._fetch_into(url, fh)
                fh.flush()
                os.fsync(fh.fileno())
            if expected is not None and received != expected:
                msg = f"Transfer of {remote.path!r} stopped at {received} of {expected} bytes"
                raise IncompleteDownloadError(msg, model_id=model_id)
            os.replace(part, dest)
        finally:
            Path(part).unlink(missing_ok=True)
        return written

    def _fetch_into(self, url: str, fh: BinaryIO) -> tuple[int | None, int, int]:
        """GET *url* into *fh*.

        Returns the advertised length, the raw bytes received (comparable to
        Content-Length even for encoded bodies) and the bytes written.
        """
        with self._client.stream("GET", url, headers=self._headers) as response:
            response.raise_for_status()
            length = response.headers.get("content-length")
            progress = _Progress(int(length) if length else None)
            for chunk in response.iter_bytes(chunk_size=_CHUNK_SIZE):
                fh.write(chunk)
                progress.update(response.num_bytes_downloaded)
            progress.finish()
            return progress.total, response.num_bytes_downloaded, fh.tell()


def download_model(
    manager: ModelManager,
    model_id: str,
    hub: HubClient,
    *,
    overwrite: bool = False,
    blocking: bool = True,
) -> ModelInfo:
    """Download *model_id* into the storage root and register it.

    A model that is already registered and verifies cleanly is returned as is
    unless *overwrite* is set. A registered model with mismatched files is
    downloaded again and re-registered.
    """
    repair = False
    if model_id in manager:
        mismatches = manager.verify(model_id)
        if not mismatches and not overwrite:
            _log(f"{model_id} is already downloaded.")
            return manager.lookup(model_id)
        repair = bool(mismatches)
        if repair:
            _log(f"{model_id}: {len(mismatches)} file(s) need repair, downloading again ...")

    dest = manager.model_dir(model_id)
    _log(f"Fetching manifest for {model_id} ...")
    remote_files = hub.fetch_manifest(model_id)
    if not remote_files:
        raise IncompleteDownloadError("The hub lists no files for this model", model_id=model_id)

    written: list[ModelFile] = []
    for remote in remote_files:
        # Validate the hub-supplied path before anything is written.
        rel = ModelFile(path=remote.path, size=remote.size or 0).path
        _log(f"  {rel}")
        size = hub.download_file(model_id, remote, dest / rel)
        if remote.size is not None and size != remote.size:
            msg = f"File {remote.path!r} has {size} bytes, hub reports {remote.size}"
            raise IncompleteDownloadError(msg, model_id=model_id)
        written.append(ModelFile(path=rel, size=size, sha256=remote.sha256))

    info = manager.register(
        model_id, written, overwrite=overwrite or repair, blocking=blocking
    )
    _log(f"Model ready: {dest}")
    return info


def download_models(
    manager: ModelManager,
    model_ids: Iterable[str],
    hub: HubClient,
    *,
    workers: int = 4,
    overwrite: bool = False,
    blocking: bool = True,
) -> list[DownloadResult]:
    """Download several models in parallel; results follow input order."""
    ids = list(dict.fromkeys(model_ids))

    def _one(model_id: str) -> DownloadResult:
        try:
            info = download_model(
                manager, model_id, hub, overwrite=overwrite, blocking=blocking
            )
        except (ModelRegistryError, httpx.HTTPError, OSError) as exc:
            return DownloadResult(model_id, error=exc)
        return DownloadResult(model_id, info=info)

    with ThreadPoolExecutor(max_workers=max(1, min(workers, len(ids) or 1))) as pool:
        return list(pool.map(_one, ids))


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _log(msg: str) -> None:
    print(msg, file=sys.stderr)


def _progress(msg: str) -> None:
    print(msg, end="", file=sys.stderr, flush=True)


class _Progress:
    """One stderr line per file, redrawn when the whole percentage changes."""

    def __init__(self, total: int | None) -> None:
        self.total = total
        self._shown = -1

    def update(self, done: int) -> None:
        if not self.total:
            return
        pct = min(100, done * 100 // self.total)
        if pct == self._shown:
            return
        self._shown = pct
        _progress(f"\r    {done / _MB:.1f} / {self.total / _MB:.1f} MB ({pct}%)")

    def finish(self) -> None:
        if self._shown >= 0:
            _progress("\n")
