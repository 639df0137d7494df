"""Callback implementations for the Gradio interface."""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from config.settings import AppConfig
from modules.pipelines.engine import CancellationToken
from modules.pipelines.model_registry import available_models, resolve_model
from modules.pipelines.request import GenerationRequest, OutputFormat, SeedPolicy
from modules.services.generation_service import GenerationOrchestrator, GenerationResult
from modules.services.history_service import GenerationHistoryService, GenerationRecord
from modules.services.storage_service import StorageService
from modules.utils.cache import ThumbnailCache
from modules.utils.errors import GenerationCancelled, LocalImgError, StoreError
from modules.utils.image_utils import decode_image

logger = logging.getLogger(__name__)

THUMBNAIL_SIZE = (160, 160)
HISTORY_LIMIT = 200

_DONE = object()


def build_callbacks(
    config: AppConfig,
    orchestrator: Optional[GenerationOrchestrator] = None,
    store: Optional[GenerationHistoryService] = None,
    thumbnails: Optional[ThumbnailCache] = None,
    storage: Optional[StorageService] = None,
) -> dict[str, Any]:
    """Return a dictionary of Gradio callback functions."""

    model_labels: Dict[str, str] = {model.name: model.id for model in available_models()}

    def _ensure_orchestrator() -> GenerationOrchestrator:
        if orchestrator is None:
            raise RuntimeError("生成服务未配置")
        return orchestrator

    def _ensure_store() -> GenerationHistoryService:
        if store is None:
            raise RuntimeError("历史记录服务未配置")
        return store

    def _normalize_seed(seed: Any) -> Optional[int]:
        if seed in ("", None):
            return None
        try:
            return int(seed)
        except (TypeError, ValueError):
            return None

    def _normalize_int(value: Any, default: int) -> int:
        try:
            return int(value)
        except (TypeError, ValueError):
            return default

    def _resolve_model_selection(selection: str) -> str:
        if not selection:
            return resolve_model(config.selected_model_id).id
        return model_labels.get(selection, selection)

    def _build_request(
        prompt: str,
        negative_prompt: str,
        steps: Any,
        guidance_scale: Any,
        seed: Any,
        width: Any,
        height: Any,
        output_format: str,
        model_name: str,
    ) -> GenerationRequest:
        normalized_seed = _normalize_seed(seed)
        return GenerationRequest(
            prompt=prompt or "",
            negative_prompt=negative_prompt or "",
            model_id=_resolve_model_selection(model_name),
            steps=_normalize_int(steps, config.resolved_steps()),
            guidance_scale=float(guidance_scale if guidance_scale is not None else config.resolved_guidance_scale()),
            width=_normalize_int(width, config.default_width),
            height=_normalize_int(height, config.default_height),
            seed_policy=SeedPolicy.random() if normalized_seed is None else SeedPolicy.fixed(normalized_seed),
            output_format=OutputFormat.parse(output_format, default=config.default_output_format),
        )

    def _success_message(result: GenerationResult) -> str:
        request = result.request
        return f"生成成功（seed={result.seed}，{request.width}×{request.height}）"

    def on_generate(
        prompt: str,
        negative_prompt: str,
        steps: int,
        guidance_scale: float,
        seed: Optional[int],
        width: int,
        height: int,
        output_format: str,
        model_name: str,
    ) -> Iterator[tuple[Optional[Any], str]]:
        """Run a generation on a worker thread and stream preview/status updates."""
        service = _ensure_orchestrator()
        request = _build_request(
            prompt, negative_prompt, steps, guidance_scale, seed, width, height, output_format, model_name
        )

        events: "queue.Queue[tuple[str, Any]]" = queue.Queue()
        token = CancellationToken()

        def _worker() -> None:
            try:
                result = service.submit(
                    request,
                    on_progress=lambda phase, done, total: events.put(("progress", (phase, done, total))),
                    on_preview=lambda image: events.put(("preview", image)),
                    cancel_token=token,
                )
                events.put(("result", result))
            except LocalImgError as exc:
                events.put(("error", exc))
            except Exception as exc:  # noqa: BLE001
                logger.exception("Unexpected generation failure")
                events.put(("error", exc))
            finally:
                events.put(("done", _DONE))

        worker = threading.Thread(target=_worker, name="generation", daemon=True)
        worker.start()

        latest_preview: Optional[Any] = None
        finished = False
        try:
            yield None, "准备中…"
            while True:
                kind, payload = events.get()
                if kind == "done":
                    finished = True
                    break
                if kind == "progress":
                    phase, done, total = payload
                    label = "下载模型" if phase == "Downloading" else "生成中"
                    yield latest_preview, f"{label}：{done}/{total}"
                elif kind == "preview":
                    latest_preview = payload
                    yield latest_preview, "生成中：预览已更新"
                elif kind == "result":
                    yield payload.image, _success_message(payload)
                elif kind == "error":
                    yield _describe_failure(payload, latest_preview)
        finally:
            # 客户端断开时生成器被关闭，停止后台任务以免保存无人接收的结果
            if not finished:
                token.cancel()
        worker.join()

    def on_cancel() -> str:
        service = _ensure_orchestrator()
        if service.cancel():
            return "已请求取消，将在当前步骤结束后停止。"
        return "当前没有正在进行的生成任务。"

    def _caption(record: GenerationRecord) -> str:
        prompt = record.prompt if len(record.prompt) <= 40 else record.prompt[:37] + "..."
        return f"{prompt}（seed={record.seed}）"

    def on_refresh_history() -> tuple[List[tuple[Any, str]], List[str]]:
        history = _ensure_store()
        records = history.list_records(limit=HISTORY_LIMIT)
        items: List[tuple[Any, str]] = []
        ids: List[str] = []
        if thumbnails is None:
            return items, ids
        # 先提交全部解码任务，再按顺序收集结果
        pending = [(record, thumbnails.get(record.record_id, THUMBNAIL_SIZE)) for record in records]
        for record, future in pending:
            try:
                thumbnail = future.result()
            except StoreError as exc:
                logger.warning("Thumbnail unavailable for %s: %s", record.record_id, exc)
                continue
            if thumbnail is None:
                continue
            items.append((thumbnail, _caption(record)))
            ids.append(record.record_id)
        return items, ids

    def on_select_record(record_ids: Sequence[str], index: Optional[int]) -> tuple[Optional[Any], str, str]:
        history = _ensure_store()
        if index is None or not 0 <= int(index) < len(record_ids):
            return None, "请选择一条历史记录。", ""
        record_id = record_ids[int(index)]
        try:
            record = history.get(record_id, with_image=True)
        except StoreError as exc:
            return None, f"读取历史记录失败：{exc}", ""
        try:
            image = decode_image(record.image_data or b"")
        except LocalImgError as exc:
            return None, f"无法显示图像：{exc}", record_id
        return image, _describe_record(record), record_id

    def on_replay_record(record_id: str) -> tuple[Any, ...]:
        """Return form values that reproduce the selected record exactly."""
        history = _ensure_store()
        if not record_id:
            raise ValueError("请先选择一条历史记录。")
        record = history.get(record_id)
        return (
            record.prompt,
            record.negative_prompt,
            record.steps,
            record.guidance_scale,
            str(record.seed),
            record.width,
            record.height,
            record.output_format.value.upper(),
            resolve_model(record.model_id).name,
        )

    def on_delete_record(record_id: str) -> str:
        history = _ensure_store()
        if not record_id:
            return "请先选择一条历史记录。"
        try:
            removed = history.delete(record_id)
        except StoreError as exc:
            return f"删除失败：{exc}"
        if thumbnails is not None:
            thumbnails.invalidate(record_id)
        return "已删除该记录。" if removed else "记录不存在或已被删除。"

    def on_clear_history() -> str:
        history = _ensure_store()
        try:
            count = history.delete_all()
        except StoreError as exc:
            return f"清空失败：{exc}"
        if thumbnails is not None:
            thumbnails.clear()
        return f"已清空 {count} 条历史记录。"

    def on_export_record(record_id: str) -> str:
        if storage is None:
            return "导出服务未配置。"
        if not record_id:
            return "请先选择一条历史记录。"
        try:
            path = storage.export_record(record_id)
        except StoreError as exc:
            return f"导出失败：{exc}"
        return f"已导出到 {path}"

    return {
        "on_generate": on_generate,
        "on_cancel": on_cancel,
        "on_refresh_history": on_refresh_history,
        "on_select_record": on_select_record,
        "on_replay_record": on_replay_record,
        "on_delete_record": on_delete_record,
        "on_clear_history": on_clear_history,
        "on_export_record": on_export_record,
    }


def _describe_failure(exc: Exception, preview: Optional[Any]) -> Tuple[Optional[Any], str]:
    if isinstance(exc, GenerationCancelled):
        return preview, "生成已取消。"
    if isinstance(exc, StoreError) and exc.result is not None:
        return exc.result.image, f"图像已生成（seed={exc.result.seed}），但保存历史记录失败：{exc}"
    return None, f"生成失败：{exc}"


def _describe_record(record: GenerationRecord) -> str:
    created = time.strftime("%Y-%m-%d %H:%M", time.localtime(record.created_at))
    lines = [
        f"**提示词**：{record.prompt}",
        f"**模型**：{resolve_model(record.model_id).name}",
        f"**尺寸**：{record.width}×{record.height}　**步数**：{record.steps}",
        f"**引导系数**：{record.guidance_scale:.1f}　**种子**：{record.seed}",
        f"**格式**：{record.output_format.value.upper()}　**时间**：{created}",
    ]
    if record.negative_prompt:
        lines.insert(1, f"**反向提示词**：{record.negative_prompt}")
    return "\n\n".join(lines)
