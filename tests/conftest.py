"""Shared fixtures and pytest configuration."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from si_models.models import ModelManager
from si_models.types import storage_dirname


# ---------------------------------------------------------------------------
# --slow flag
# ---------------------------------------------------------------------------


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--slow",
        action="store_true",
        default=False,
        help="Run slow tests (requires network access to the model hub).",
    )


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    if config.getoption("--slow"):
        return
    skip_slow = pytest.mark.skip(reason="Use --slow to run")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


# ---------------------------------------------------------------------------
# Storage fixtures
# ---------------------------------------------------------------------------

WriteModel = Callable[..., list[dict]]


@pytest.fixture()
def storage_root(tmp_path: Path) -> Path:
    """A storage root that does not exist yet."""
    return tmp_path / "models"


@pytest.fixture()
def manager(storage_root: Path) -> ModelManager:
    return ModelManager.open(storage_root, lock_timeout=0.5)


@pytest.fixture()
def write_model(storage_root: Path) -> WriteModel:
    """Materialize model files the way the downloader would.

    Returns the ``[{"path", "size"}, ...]`` list to pass to ``register``.
    """

    def _write(model_id: str, files: dict[str, bytes]) -> list[dict]:
        base = storage_root / storage_dirname(model_id)
        entries = []
        for rel, data in files.items():
            target = base / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
            entries.append({"path": rel, "size": len(data)})
        return entries

    return _write
