"""Logging utilities for CellType-Reference.

File loggers for long classification runs, plus structured run records:
JSON lines for per-run bookkeeping and YAML documents for configuration
and training summaries.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Tuple, Union

import yaml

PathLike = Union[str, Path]

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def get_timestamped_log_path(log_path: PathLike, when: Optional[datetime] = None) -> Path:
    """Timestamped variant of ``log_path``, e.g. classify.log -> classify_20260301_101500.log."""
    path = Path(log_path)
    stamp = (when or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return path.with_name(f"{path.stem}_{stamp}{path.suffix or '.log'}")


def get_logger(
    name: str,
    log_path: PathLike,
    level: int = logging.INFO,
    timestamped: bool = True,
    console: bool = False,
) -> Tuple[logging.Logger, Path]:
    """Configure ``name`` to log to a file, dropping handlers from earlier runs.

    Parameters
    ----------
    name : str
        Logger name, usually "celltype_reference".
    log_path : PathLike
        Base path of the log file.
    level : int
        Logging level (default: INFO).
    timestamped : bool
        Write to a timestamped sibling of ``log_path`` so repeated runs
        do not clobber each other. If False, ``log_path`` is truncated.
    console : bool
        Also echo records to stderr.

    Returns
    -------
    Tuple[logging.Logger, Path]
        The logger and the file it writes to.
    """
    target = get_timestamped_log_path(log_path) if timestamped else Path(log_path)
    target.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    while logger.handlers:
        old = logger.handlers[0]
        logger.removeHandler(old)
        old.close()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)
    handlers = [logging.FileHandler(target, mode="a" if timestamped else "w", encoding="utf-8")]
    if console:
        handlers.append(logging.StreamHandler(sys.stderr))
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger, target


def run_record(command: str, **fields: Any) -> dict[str, Any]:
    """Build a run record stamped with the command, time and package version."""
    from .. import __version__

    record: dict[str, Any] = {
        "timestamp": datetime.now().isoformat(timespec="seconds"),
        "command": command,
        "version": __version__,
    }
    record.update(fields)
    return record


def _append(log_path: PathLike, text: str) -> None:
    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(text if text.endswith("\n") else text + "\n")


def log_json(log_path: PathLike, record: dict[str, Any]) -> None:
    """Append ``record`` to a JSON-lines file."""
    _append(log_path, json.dumps(record, default=str))


def log_yaml(
    log_path: Optional[PathLike],
    record: dict[str, Any],
    *,
    logger: Optional[logging.Logger] = None,
) -> None:
    """Write ``record`` as a YAML document terminated by ``---``.

    The document goes to ``logger`` at INFO level when one is given,
    otherwise it is appended to ``log_path``.

    Raises
    ------
    ValueError
        If neither ``log_path`` nor ``logger`` is given.
    """
    document = yaml.safe_dump(record, sort_keys=False).rstrip("\n") + "\n---"
    if logger is not None:
        logger.info("%s", document)
    elif log_path is not None:
        _append(log_path, document)
    else:
        raise ValueError("log_yaml needs either 'log_path' or 'logger'")
