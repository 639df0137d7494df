"""Model provisioning: local cache checks and weight downloads."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from huggingface_hub import HfApi, hf_hub_download

from modules.utils.errors import TransportError
from modules.utils.model_loader import candidate_roots, locate_model

logger = logging.getLogger(__name__)

DownloadProgress = Callable[[float], None]

_SKIPPED_SUFFIXES = (".bin", ".ckpt", ".onnx", ".onnx_data", ".msgpack", ".h5", ".pb", ".md", ".png", ".jpg")


class DownloadState(str, Enum):
    IDLE = "idle"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class DownloadStatus:
    state: DownloadState = DownloadState.IDLE
    progress: float = 0.0
    error: Optional[str] = None


def _wanted(filename: str) -> bool:
    """Keep the diffusers component files needed by ``from_pretrained``."""
    if filename.endswith(_SKIPPED_SUFFIXES):
        return False
    if ".fp16." in filename:
        return False
    # 根目录下的单文件检查点体积过大且不需要
    if "/" not in filename and filename.endswith(".safetensors"):
        return False
    return True


class ModelManager:
    """Check the hub cache for model weights and download them on demand."""

    def __init__(
        self,
        model_dir: Path,
        custom_path: Optional[str] = None,
        token: Optional[str] = None,
        api: Optional[HfApi] = None,
    ) -> None:
        self.model_dir = Path(model_dir)
        self.custom_path = custom_path
        self._token = token
        self._api = api or HfApi(token=token)
        self._lock = threading.Lock()
        self.status = DownloadStatus()

    def is_cached(self, model_id: str, custom_path: Optional[str] = None) -> bool:
        """True when the model exists in the model dir or the custom cache path."""
        roots = candidate_roots(self.model_dir, custom_path or self.custom_path)
        return locate_model(model_id, roots) is not None

    @property
    def is_ready(self) -> bool:
        return self.status.state is DownloadState.COMPLETED

    def _list_files(self, model_id: str) -> List[str]:
        files = [name for name in self._api.list_repo_files(model_id) if _wanted(name)]
        if not files:
            raise TransportError(f"模型仓库中没有可下载的文件：{model_id}")
        return files

    def download(self, model_id: str, on_progress: Optional[DownloadProgress] = None) -> None:
        """Download ``model_id`` into the model dir, reporting a 0-1 fraction."""
        if not self._lock.acquire(blocking=False):
            raise TransportError("已有模型正在下载。")
        try:
            self.status = DownloadStatus(state=DownloadState.DOWNLOADING)
            self.model_dir.mkdir(parents=True, exist_ok=True)
            try:
                files = self._list_files(model_id)
                total = len(files)
                for index, filename in enumerate(files, start=1):
                    hf_hub_download(
                        model_id,
                        filename,
                        cache_dir=str(self.model_dir),
                        token=self._token,
                    )
                    fraction = index / total
                    self.status.progress = fraction
                    if on_progress is not None:
                        on_progress(fraction)
            except TransportError as exc:
                self.status = DownloadStatus(state=DownloadState.FAILED, error=str(exc))
                raise
            except Exception as exc:  # noqa: BLE001
                self.status = DownloadStatus(state=DownloadState.FAILED, error=str(exc))
                raise TransportError(f"模型下载失败：{exc}") from exc
            self.status = DownloadStatus(state=DownloadState.COMPLETED, progress=1.0)
            logger.info("Downloaded %s (%d files)", model_id, total)
        finally:
            self._lock.release()
