"""File storage helpers."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Optional

from modules.services.history_service import GenerationHistoryService
from modules.utils.errors import StoreError


class StorageService:
    """Export stored generations to the output directory."""

    def __init__(self, output_dir: Path, store: GenerationHistoryService) -> None:
        self.output_dir = Path(output_dir)
        self.store = store

    def export_filename(self, created_at: float, extension: str) -> str:
        stamp = time.strftime("%Y%m%d_%H%M%S", time.localtime(created_at))
        return f"localimg_{stamp}.{extension}"

    def export_record(self, record_id: str, target: Optional[Path] = None) -> Path:
        """Write the record's image bytes to ``target`` (or the output dir) and return the path."""
        record = self.store.get(record_id)
        data = self.store.load_image_bytes(record_id)
        if target is None:
            path = self.output_dir / self.export_filename(record.created_at, record.output_format.file_extension)
        else:
            path = Path(target)
        counter = 1
        while target is None and path.exists():
            path = path.with_name(f"{path.stem.rsplit('-', 1)[0]}-{counter}{path.suffix}")
            counter += 1
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise StoreError(f"导出图像失败：{exc}") from exc
        return path
