"""Model index, registry manager and hub downloads for si."""

from si_models.models.download import (
    DownloadResult,
    HubClient,
    RemoteFile,
    download_model,
    download_models,
)
from si_models.models.index import ModelIndex
from si_models.models.manager import ModelManager

__all__ = [
    "DownloadResult",
    "HubClient",
    "ModelIndex",
    "ModelManager",
    "RemoteFile",
    "download_model",
    "download_models",
]
