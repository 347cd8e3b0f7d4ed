"""Run logs and structured records for sctrace.

Each command gets its own log file under the output directory. Stage
summaries are kept as JSON lines or YAML documents next to it so a run
can be inspected without parsing free text.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Tuple, Union

import numpy as np
import yaml

PathLike = Union[str, Path]

RECORD_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
RECORD_DATEFMT = "%Y-%m-%d %H:%M:%S"


def get_timestamped_log_path(log_path: PathLike) -> Path:
    """Return ``log_path`` with the current time appended to its stem.

    ``logs/run.log`` becomes ``logs/run_20260301_080530.log``.
    """
    base = Path(log_path)
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return base.with_name(f"{base.stem}_{stamp}{base.suffix or '.log'}")


def get_logger(
    name: str,
    log_path: PathLike,
    level: int = logging.INFO,
    timestamped: bool = True,
) -> Tuple[logging.Logger, Path]:
    """Bind logger ``name`` to a single log file.

    Parameters
    ----------
    name : str
        Logger name, usually ``sctrace.<command>``
    log_path : PathLike
        Where the log goes
    level : int
        Logging level (default: INFO)
    timestamped : bool
        If True a timestamp is added to the file name so earlier runs
        are kept. If False an existing file at ``log_path`` is truncated.

    Returns
    -------
    Tuple[logging.Logger, Path]
        The configured logger and the file it writes to
    """
    target = get_timestamped_log_path(log_path) if timestamped else Path(log_path)
    target.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    while logger.handlers:
        stale = logger.handlers[0]
        logger.removeHandler(stale)
        stale.close()

    file_handler = logging.FileHandler(target, mode="w", encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(RECORD_FORMAT, datefmt=RECORD_DATEFMT))
    logger.addHandler(file_handler)
    logger.setLevel(level)
    # Run logs stay out of the console output of the CLI
    logger.propagate = False
    return logger, target


def to_builtin(value: Any) -> Any:
    """Recursively turn numpy scalars and arrays into plain Python values."""
    if isinstance(value, Mapping):
        return {str(key): to_builtin(item) for key, item in value.items()}
    if isinstance(value, np.ndarray):
        return to_builtin(value.tolist())
    if isinstance(value, (list, tuple)):
        return [to_builtin(item) for item in value]
    if isinstance(value, np.generic):
        return value.item()
    return value


def _append(path: PathLike, text: str) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    with open(target, "a", encoding="utf-8") as fh:
        fh.write(text + "\n")


def log_json(log_path: PathLike, record: Mapping[str, Any]) -> None:
    """Append ``record`` as a single JSON line."""
    _append(log_path, json.dumps(to_builtin(record), default=str))


def log_yaml(
    log_path: PathLike,
    record: Mapping[str, Any],
    *,
    logger: logging.Logger | None = None,
) -> None:
    """Write ``record`` as a YAML document terminated by ``---``.

    When ``logger`` is given the document is logged at INFO level and
    ``log_path`` is left untouched.
    """
    document = yaml.safe_dump(to_builtin(record), sort_keys=False).rstrip("\n") + "\n---"
    if logger is None:
        _append(log_path, document)
    else:
        logger.info("%s", document)
