"""Generation history tracking.

Scalar fields live in an SQLite table; the encoded image bytes of every record
are written to a separate blob file so that listing never reads image data.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Iterator, List, Optional
from uuid import uuid4

from modules.pipelines.request import OutputFormat, ResolvedRequest
from modules.utils.errors import StoreError

logger = logging.getLogger(__name__)

_SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS generations (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    record_id TEXT NOT NULL UNIQUE,
    prompt TEXT NOT NULL,
    negative_prompt TEXT NOT NULL,
    steps INTEGER NOT NULL,
    guidance_scale REAL NOT NULL,
    seed TEXT NOT NULL,
    width INTEGER NOT NULL,
    height INTEGER NOT NULL,
    model_id TEXT NOT NULL,
    output_format TEXT NOT NULL,
    blob_name TEXT NOT NULL,
    blob_bytes INTEGER NOT NULL,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_generations_created ON generations(created_at DESC, seq DESC);
"""

_COLUMNS = (
    "record_id, prompt, negative_prompt, steps, guidance_scale, seed, width, height, "
    "model_id, output_format, blob_bytes, created_at"
)


@dataclass(frozen=True, slots=True)
class GenerationRecord:
    """Metadata describing a completed generation."""

    prompt: str
    negative_prompt: str
    steps: int
    guidance_scale: float
    seed: int
    width: int
    height: int
    model_id: str
    output_format: OutputFormat
    created_at: float
    record_id: str = ""
    image_size: int = 0
    image_data: Optional[bytes] = field(default=None, repr=False, compare=False)

    @classmethod
    def from_request(
        cls, request: ResolvedRequest, image_data: bytes, created_at: Optional[float] = None
    ) -> "GenerationRecord":
        return cls(
            prompt=request.prompt,
            negative_prompt=request.negative_prompt,
            steps=request.steps,
            guidance_scale=request.guidance_scale,
            seed=request.seed,
            width=request.width,
            height=request.height,
            model_id=request.model_id,
            output_format=request.output_format,
            created_at=time.time() if created_at is None else created_at,
            image_size=len(image_data),
            image_data=image_data,
        )

    def to_request(self) -> ResolvedRequest:
        """Parameters of this record as a resolved request (fixed seed)."""
        return ResolvedRequest(
            prompt=self.prompt,
            model_id=self.model_id,
            negative_prompt=self.negative_prompt,
            steps=self.steps,
            guidance_scale=self.guidance_scale,
            width=self.width,
            height=self.height,
            seed=self.seed,
            output_format=self.output_format,
        )


class GenerationHistoryService:
    """SQLite-indexed history store with externalized image blobs."""

    def __init__(self, db_path: Path, blob_dir: Path) -> None:
        self.db_path = Path(db_path)
        self.blob_dir = Path(blob_dir)
        self._write_lock = threading.Lock()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.blob_dir.mkdir(parents=True, exist_ok=True)
            with self._connect() as conn:
                conn.executescript(_SCHEMA)
        except (OSError, sqlite3.Error) as exc:
            raise StoreError(f"无法初始化历史记录存储：{exc}") from exc

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _blob_path(self, record_id: str, fmt: OutputFormat) -> Path:
        return self.blob_dir / f"{record_id}.{fmt.file_extension}"

    def append(self, record: GenerationRecord) -> str:
        """Persist a record and its image bytes, returning the new record id."""
        if record.image_data is None:
            raise StoreError("记录缺少图像数据，无法保存。")

        record_id = uuid4().hex
        blob_path = self._blob_path(record_id, record.output_format)
        tmp_path = blob_path.with_name(f".{blob_path.name}.tmp")

        with self._write_lock:
            try:
                tmp_path.write_bytes(record.image_data)
                os.replace(tmp_path, blob_path)
            except OSError as exc:
                tmp_path.unlink(missing_ok=True)
                raise StoreError(f"写入图像文件失败：{exc}") from exc

            try:
                with self._connect() as conn:
                    conn.execute(
                        "INSERT INTO generations (record_id, prompt, negative_prompt, steps, guidance_scale, "
                        "seed, width, height, model_id, output_format, blob_name, blob_bytes, created_at) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            record_id,
                            record.prompt,
                            record.negative_prompt,
                            record.steps,
                            record.guidance_scale,
                            str(record.seed),
                            record.width,
                            record.height,
                            record.model_id,
                            record.output_format.value,
                            blob_path.name,
                            len(record.image_data),
                            record.created_at,
                        ),
                    )
                    conn.commit()
            except sqlite3.Error as exc:
                blob_path.unlink(missing_ok=True)
                raise StoreError(f"写入历史记录失败：{exc}") from exc

        logger.info("Stored generation %s (%d bytes)", record_id, len(record.image_data))
        return record_id

    def list(self) -> List[str]:
        """Record ids, newest first; ties keep the later insertion first."""
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT record_id FROM generations ORDER BY created_at DESC, seq DESC"
                ).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(f"读取历史记录失败：{exc}") from exc
        return [row["record_id"] for row in rows]

    def list_records(self, limit: Optional[int] = None) -> List[GenerationRecord]:
        """Return the most recent records without their image bytes."""
        query = f"SELECT {_COLUMNS} FROM generations ORDER BY created_at DESC, seq DESC"
        params: tuple = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (int(limit),)
        try:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(f"读取历史记录失败：{exc}") from exc
        return [_row_to_record(row) for row in rows]

    def get(self, record_id: str, with_image: bool = False) -> GenerationRecord:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT {_COLUMNS} FROM generations WHERE record_id = ?", (record_id,)
                ).fetchone()
        except sqlite3.Error as exc:
            raise StoreError(f"读取历史记录失败：{exc}") from exc
        if row is None:
            raise StoreError(f"历史记录不存在：{record_id}")
        record = _row_to_record(row)
        if with_image:
            record = replace(record, image_data=self.load_image_bytes(record_id))
        return record

    def load_image_bytes(self, record_id: str) -> bytes:
        """Read the externalized image bytes of a record."""
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT blob_name FROM generations WHERE record_id = ?", (record_id,)
                ).fetchone()
        except sqlite3.Error as exc:
            raise StoreError(f"读取历史记录失败：{exc}") from exc
        if row is None:
            raise StoreError(f"历史记录不存在：{record_id}")
        try:
            return (self.blob_dir / row["blob_name"]).read_bytes()
        except OSError as exc:
            raise StoreError(f"读取图像文件失败：{exc}") from exc

    def delete(self, record_id: str) -> bool:
        """Remove a record and its blob together. Returns False if it did not exist."""
        with self._write_lock:
            try:
                with self._connect() as conn:
                    row = conn.execute(
                        "SELECT blob_name FROM generations WHERE record_id = ?", (record_id,)
                    ).fetchone()
                    if row is None:
                        return False
                    conn.execute("DELETE FROM generations WHERE record_id = ?", (record_id,))
                    # 先删除文件，成功后再提交，避免留下孤立数据
                    (self.blob_dir / row["blob_name"]).unlink(missing_ok=True)
                    conn.commit()
            except (OSError, sqlite3.Error) as exc:
                raise StoreError(f"删除历史记录失败：{exc}") from exc
        logger.info("Deleted generation %s", record_id)
        return True

    def delete_all(self) -> int:
        """Remove every record and blob. Returns the number of records removed."""
        with self._write_lock:
            try:
                with self._connect() as conn:
                    rows = conn.execute("SELECT blob_name FROM generations").fetchall()
                    conn.execute("DELETE FROM generations")
                    for row in rows:
                        (self.blob_dir / row["blob_name"]).unlink(missing_ok=True)
                    conn.commit()
            except (OSError, sqlite3.Error) as exc:
                raise StoreError(f"清空历史记录失败：{exc}") from exc
        logger.info("Deleted %d generations", len(rows))
        return len(rows)

    def __len__(self) -> int:
        try:
            with self._connect() as conn:
                return int(conn.execute("SELECT COUNT(*) FROM generations").fetchone()[0])
        except sqlite3.Error as exc:
            raise StoreError(f"读取历史记录失败：{exc}") from exc


def _row_to_record(row: sqlite3.Row) -> GenerationRecord:
    return GenerationRecord(
        record_id=row["record_id"],
        prompt=row["prompt"],
        negative_prompt=row["negative_prompt"],
        steps=int(row["steps"]),
        guidance_scale=float(row["guidance_scale"]),
        seed=int(row["seed"]),
        width=int(row["width"]),
        height=int(row["height"]),
        model_id=row["model_id"],
        output_format=OutputFormat.parse(row["output_format"], default=OutputFormat.PNG),
        image_size=int(row["blob_bytes"]),
        created_at=float(row["created_at"]),
    )
