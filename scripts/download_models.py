"""Utility script for downloading required diffusion weights."""

from __future__ import annotations

import argparse
import logging
from typing import Optional, Sequence

from config.settings import load_config
from modules.pipelines.model_registry import available_models, resolve_model
from modules.services.model_manager import ModelManager
from modules.utils.errors import TransportError
from modules.utils.logging import setup_logging


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="下载 LocalImg 所需的模型权重")
    parser.add_argument(
        "model_ids",
        nargs="*",
        help="要下载的模型 ID，默认为配置中选中的模型",
    )
    parser.add_argument("--all", action="store_true", help="下载全部已登记的模型")
    parser.add_argument("--config", default=None, help=".env 配置文件路径")
    return parser.parse_args(argv)


def download_all(model_ids: Sequence[str], manager: ModelManager) -> int:
    """Download every model not already cached. Returns the number of failures."""
    logger = logging.getLogger("localimg.download")
    failures = 0
    for model_id in model_ids:
        if manager.is_cached(model_id):
            logger.info("%s already cached, skipping", model_id)
            continue
        logger.info("Downloading %s", model_id)
        try:
            manager.download(model_id, on_progress=lambda f, _id=model_id: logger.info("%s: %.0f%%", _id, f * 100))
        except TransportError as exc:
            logger.error("%s", exc)
            failures += 1
    return failures


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    config = load_config(args.config)
    setup_logging(config)

    if args.all:
        model_ids = [model.id for model in available_models()]
    elif args.model_ids:
        model_ids = list(args.model_ids)
    else:
        model_ids = [resolve_model(config.selected_model_id).id]

    manager = ModelManager(config.model_dir, config.custom_model_cache_path, token=config.metadata.get("hf_token"))
    return 1 if download_all(model_ids, manager) else 0


if __name__ == "__main__":
    raise SystemExit(main())
