"""Utility helpers."""

from g_bridge.utils.helpers import ensure_dir, get_data_path, truncate_text

__all__ = ["ensure_dir", "get_data_path", "truncate_text"]
