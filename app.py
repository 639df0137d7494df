"""Application entry point for the LocalImg project."""

from __future__ import annotations

from typing import Optional

from config.settings import load_config
from modules.pipelines.text2img import build_engine_registry
from modules.services.generation_service import GenerationOrchestrator
from modules.services.history_service import GenerationHistoryService
from modules.services.model_manager import ModelManager
from modules.services.storage_service import StorageService
from modules.ui.layout import build_app
from modules.utils.cache import ThumbnailCache
from modules.utils.logging import setup_logging


def main(config_path: Optional[str] = None) -> None:
    """Load configuration, wire the services and launch the Gradio interface."""
    config = load_config(config_path)
    logger = setup_logging(config)

    store = GenerationHistoryService(config.history_db_path, config.blob_dir)
    thumbnails = ThumbnailCache(store.load_image_bytes)
    provisioner = ModelManager(
        config.model_dir,
        config.custom_model_cache_path,
        token=config.metadata.get("hf_token"),
    )
    orchestrator = GenerationOrchestrator(config, store, build_engine_registry(config), provisioner)
    storage = StorageService(config.output_dir, store)
    logger.info(
        "LocalImg ready: model=%s tier=%s history=%d",
        config.selected_model_id,
        orchestrator.tier.name.value,
        len(store),
    )

    app = build_app(config, orchestrator, store, thumbnails, storage)
    app.queue()
    try:
        app.launch(share=False, inbrowser=False)
    finally:
        thumbnails.shutdown(wait=False)


if __name__ == "__main__":
    main()
