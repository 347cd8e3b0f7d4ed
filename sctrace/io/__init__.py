"""I/O utilities for sctrace.

Provides logging helpers and CSV export of pipeline results.
"""

from .logging import get_logger, get_timestamped_log_path, log_json, log_yaml
from .csv import ensure_output_dir, export_results, write_dataframe

__all__ = [
    # Logging
    "get_logger",
    "get_timestamped_log_path",
    "log_json",
    "log_yaml",
    # CSV export
    "ensure_output_dir",
    "export_results",
    "write_dataframe",
]
