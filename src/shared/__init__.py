"""Shared utilities and helpers."""
from shared.diagnostics import log_memory_usage, log_thread_status
from shared.portable import resolve_data_path, user_data_dir

__all__ = [
    'log_memory_usage',
    'log_thread_status',
    'resolve_data_path',
    'user_data_dir',
]
