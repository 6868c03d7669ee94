# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/duostack/logging/log.py

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

LOGGER = "duostack"
MASK = "<sensitive>"

_DATEFMT = "%Y-%m-%d %H:%M:%S"


class RedactFilter(logging.Filter):
    """Replaces known secret values in rendered messages with a mask."""

    def __init__(self, secrets: Iterable[str]):
        super().__init__()
        # longest first so a secret containing another is masked whole
        self.secrets = sorted({s for s in secrets if s}, key=len, reverse=True)

    def filter(self, record: logging.LogRecord) -> bool:
        if self.secrets:
            msg = record.getMessage()
            for s in self.secrets:
                msg = msg.replace(s, MASK)
            record.msg, record.args = msg, None
        return True


def _fresh(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.filters.clear()
    logger.propagate = False
    return logger


def _file_handler(path: Path, fmt: str, *, mode: str = "a") -> logging.FileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(path, mode=mode, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(fmt, datefmt=_DATEFMT))
    return fh


def init_logging(
    *,
    project: str = "duostack",
    command: str = "run",
    base_dir: Path | None = None,
    verbose: bool = False,
    redact: Iterable[str] = (),
) -> tuple[logging.Logger, str, Path]:
    """
    Operator-side logging for one CLI invocation.

    Every run gets its own file under `<base_dir>/<project>/`, named after the
    command, a UTC timestamp and the run_id, with the full DEBUG trace. The
    console shows INFO (DEBUG with --debug). Values in `redact` never reach
    either handler. Returns (logger, run_id, log_path) so observers can write
    their event stream next to the log.
    """
    run_id = str(uuid.uuid4())
    if base_dir is None:
        base_dir = Path.home() / ".duostack" / "logs"

    ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    log_path = base_dir / project / f"{command}-{ts}-{run_id}.log"

    logger = _fresh(LOGGER)
    logger.addFilter(RedactFilter(redact))
    logger.addHandler(_file_handler(log_path, "%(asctime)s | %(levelname)-7s | %(message)s", mode="w"))

    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG if verbose else logging.INFO)
    ch.setFormatter(logging.Formatter("%(levelname)-7s %(message)s"))
    logger.addHandler(ch)

    logger.debug(f"duostack {command} project={project} run_id={run_id}")
    logger.info(f"log_file={log_path}")
    return logger, run_id, log_path


def init_node_logging(log_path: Path, *, node: str, redact: Iterable[str] = ()) -> logging.Logger:
    """
    Node-side logger for first-boot bootstrap. Appends, so every re-run adds
    to the same diagnosis trail that `duostack status` tails.
    """
    logger = _fresh(f"{LOGGER}.node.{node}")
    logger.addFilter(RedactFilter(redact))
    logger.addHandler(_file_handler(log_path, f"%(asctime)s | {node} | %(levelname)-7s | %(message)s"))
    return logger
