"""Console plus rotating-file logging with secrets and phone numbers masked."""

from __future__ import annotations

import logging
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# only "+"-prefixed numbers count as phones; bare digits are user ids
_PHONE_RE = re.compile(r"(?<![\w+])\+\d{7,15}\b")
_SECRET_RE = re.compile(
    r"(?P<key>(?:token|secret|signature)\s*[=:]\s*)(?P<secret>[A-Za-z0-9._:-]{4,})",
    re.IGNORECASE,
)
_BOT_TOKEN_RE = re.compile(r"\b\d{6,12}:[A-Za-z0-9_-]{30,}\b")

_QUIET_LOGGERS = {
    "aiogram.event": logging.INFO,
    "aiohttp.access": logging.WARNING,
    "asyncio": logging.INFO,
    "sqlalchemy.engine": logging.WARNING,
}


def scrub(text: str) -> str:
    if not text:
        return text
    text = _BOT_TOKEN_RE.sub("<bot-token>", text)
    text = _PHONE_RE.sub("<phone>", text)
    return _SECRET_RE.sub(lambda m: f"{m.group('key')}<token>", text)


class PiiScrubbingFilter(logging.Filter):
    """Renders the message once and masks it before any handler formats it."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = scrub(record.getMessage())
        record.args = ()
        return True


def _resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def _rotating(path: Path, level: int, max_bytes: int, backups: int) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backups, encoding="utf-8")
    handler.setLevel(level)
    return handler


def setup_logging(log_dir: str = "logs", level: int | str = logging.INFO) -> None:
    """Replace root handlers with console, ``sync.log`` and ``errors.log`` (WARNING+)."""

    numeric = _resolve_level(level)
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(numeric)

    console = logging.StreamHandler()
    console.setLevel(numeric)
    handlers = [
        console,
        _rotating(log_path / "sync.log", numeric, 5_000_000, 5),
        _rotating(log_path / "errors.log", logging.WARNING, 2_000_000, 3),
    ]
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    pii_filter = PiiScrubbingFilter()
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(pii_filter)
        root.addHandler(handler)

    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    root.info("logging initialized, level=%s", logging.getLevelName(numeric))
    root.info("log_paths dir=%s", log_path.resolve())


__all__ = ["PiiScrubbingFilter", "scrub", "setup_logging"]
