"""Helpers for locating model weights in a Hugging Face hub cache."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional


def repo_folder_name(model_id: str) -> str:
    """Hub cache folder for a repo id, e.g. ``models--stabilityai--sdxl-turbo``."""
    return "models--" + model_id.replace("/", "--")


def candidate_roots(model_dir: Path, custom_path: Optional[str] = None) -> list[Path]:
    """Cache roots in lookup order: the configured model dir, then the custom path."""
    roots = [Path(model_dir).expanduser()]
    if custom_path:
        custom = Path(custom_path).expanduser()
        if custom not in roots:
            roots.append(custom)
    return roots


def locate_model(model_id: str, roots: Iterable[Path]) -> Optional[Path]:
    """Return the first cache root holding ``model_id``, or None."""
    folder = repo_folder_name(model_id)
    for root in roots:
        if (root / folder).is_dir():
            return root
    return None
