from __future__ import annotations

import logging
import sys
from pathlib import Path


class _ConsoleNoiseFilter(logging.Filter):
    """Keep harvester logs on the console; third-party libraries only at WARNING+."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name.startswith("harvester") or record.name == "__main__":
            return True
        if record.name == "py.warnings":
            return record.levelno >= logging.ERROR
        return record.levelno >= logging.WARNING


def setup_logging(
    *,
    log_dir: str | Path = ".local/harvester",
    console_level: int | str = logging.INFO,
    file_level: int = logging.DEBUG,
) -> None:
    """Install a filtered console handler and a full file handler.

    Call this once, before the first log line.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(console_level)
    ch.setFormatter(fmt)
    ch.addFilter(_ConsoleNoiseFilter())
    root.addHandler(ch)

    fh = logging.FileHandler(str(log_dir / "harvester.log"), encoding="utf-8")
    fh.setLevel(file_level)
    fh.setFormatter(fmt)
    root.addHandler(fh)

    logging.captureWarnings(True)
