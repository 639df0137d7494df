"""Gradio layout composition for generation and history browsing."""

from __future__ import annotations

from typing import Any, Sequence

try:
    import gradio as gr
except ImportError:  # pragma: no cover
    gr = None  # type: ignore

from config.settings import AppConfig
from modules.pipelines.model_registry import available_models, resolve_model
from modules.pipelines.request import MAX_GUIDANCE, MAX_STEPS, MIN_GUIDANCE, MIN_STEPS, OutputFormat
from modules.services.generation_service import GenerationOrchestrator
from modules.services.history_service import GenerationHistoryService
from modules.services.storage_service import StorageService
from modules.ui.callbacks import build_callbacks
from modules.utils.cache import ThumbnailCache


def _model_choices() -> Sequence[str]:
    return [model.name for model in available_models()]


def _format_choices() -> Sequence[str]:
    return [fmt.value.upper() for fmt in OutputFormat]


def build_app(
    config: AppConfig,
    orchestrator: GenerationOrchestrator,
    store: GenerationHistoryService,
    thumbnails: ThumbnailCache,
    storage: StorageService,
) -> Any:
    """Compose and return the Gradio application."""
    if gr is None:
        raise RuntimeError("Gradio 未安装，请先执行依赖安装。")

    callbacks_map = build_callbacks(
        config,
        orchestrator=orchestrator,
        store=store,
        thumbnails=thumbnails,
        storage=storage,
    )
    defaults = config.default_request()
    selected_model = resolve_model(defaults.model_id)

    with gr.Blocks(title="LocalImg") as demo:
        gr.Markdown("## LocalImg 本地图像生成")

        # 生成
        with gr.Tab("生成"):
            with gr.Row():
                with gr.Column():
                    prompt = gr.Textbox(label="提示词", lines=4, placeholder="描述你想要生成的图像")
                    negative = gr.Textbox(
                        label="反向提示词",
                        lines=2,
                        placeholder="不希望出现的元素（部分模型不支持）",
                    )
                    model_select = gr.Dropdown(
                        label="模型",
                        choices=list(_model_choices()),
                        value=selected_model.name,
                    )
                    steps = gr.Slider(
                        label="采样步数",
                        minimum=MIN_STEPS,
                        maximum=MAX_STEPS,
                        step=1,
                        value=defaults.steps,
                    )
                    guidance = gr.Slider(
                        label="引导系数",
                        minimum=MIN_GUIDANCE,
                        maximum=MAX_GUIDANCE,
                        step=0.5,
                        value=defaults.guidance_scale,
                    )
                    seed = gr.Textbox(label="随机种子（留空则随机）", value="")
                    with gr.Row():
                        width = gr.Slider(label="图像宽度", minimum=64, maximum=2048, step=64, value=defaults.width)
                        height = gr.Slider(label="图像高度", minimum=64, maximum=2048, step=64, value=defaults.height)
                    output_format = gr.Radio(
                        label="输出格式",
                        choices=list(_format_choices()),
                        value=defaults.output_format.value.upper(),
                    )
                    with gr.Row():
                        generate_btn = gr.Button("生成图像", variant="primary")
                        cancel_btn = gr.Button("取消")

                with gr.Column():
                    output_image = gr.Image(label="生成结果", type="pil")
                    status = gr.Markdown("准备就绪。")

            generate_event = generate_btn.click(
                fn=callbacks_map["on_generate"],
                inputs=[prompt, negative, steps, guidance, seed, width, height, output_format, model_select],
                outputs=[output_image, status],
            )
            cancel_btn.click(fn=callbacks_map["on_cancel"], inputs=None, outputs=[status])

        # 历史记录
        with gr.Tab("历史记录"):
            record_ids = gr.State([])
            selected_id = gr.State("")
            with gr.Row():
                with gr.Column(scale=2):
                    gallery = gr.Gallery(label="历史记录", columns=5, height="auto")
                    with gr.Row():
                        refresh_btn = gr.Button("刷新")
                        clear_btn = gr.Button("清空全部", variant="stop")
                with gr.Column(scale=1):
                    detail_image = gr.Image(label="原图", type="pil")
                    detail_info = gr.Markdown("")
                    with gr.Row():
                        replay_btn = gr.Button("使用相同参数")
                        export_btn = gr.Button("导出")
                        delete_btn = gr.Button("删除")
                    history_status = gr.Markdown("")

            def _on_select(ids: list, evt: gr.SelectData):
                return callbacks_map["on_select_record"](ids, evt.index)

            refresh_btn.click(fn=callbacks_map["on_refresh_history"], inputs=None, outputs=[gallery, record_ids])
            gallery.select(fn=_on_select, inputs=[record_ids], outputs=[detail_image, detail_info, selected_id])
            replay_btn.click(
                fn=callbacks_map["on_replay_record"],
                inputs=[selected_id],
                outputs=[prompt, negative, steps, guidance, seed, width, height, output_format, model_select],
            )
            export_btn.click(fn=callbacks_map["on_export_record"], inputs=[selected_id], outputs=[history_status])
            delete_btn.click(
                fn=callbacks_map["on_delete_record"], inputs=[selected_id], outputs=[history_status]
            ).then(fn=callbacks_map["on_refresh_history"], inputs=None, outputs=[gallery, record_ids])
            clear_btn.click(
                fn=callbacks_map["on_clear_history"], inputs=None, outputs=[history_status]
            ).then(fn=callbacks_map["on_refresh_history"], inputs=None, outputs=[gallery, record_ids])

        generate_event.then(fn=callbacks_map["on_refresh_history"], inputs=None, outputs=[gallery, record_ids])
        demo.load(fn=callbacks_map["on_refresh_history"], inputs=None, outputs=[gallery, record_ids])

    return demo
