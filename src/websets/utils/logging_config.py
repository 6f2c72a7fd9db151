# src/websets/utils/logging_config.py
"""
File-routed job logging for the websets engine.

Usage:
    from websets.utils.logging_config import Logger, LogFiles, trace_context

    with trace_context(job_id):
        Logger.info("row 3 committed as v7", file=LogFiles.ENRICHMENT)

Every line carries the trace id of the current context (the job id while a
job runs), so one job's lines can be grepped out of a shared file.

Environment:
    WEBSETS_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR, CRITICAL (default: INFO)
    WEBSETS_LOG_DIR: base directory for log files (default: logs/)
    WEBSETS_LOG_MAX_BYTES: rotation size per file (default: 10MB)
    WEBSETS_LOG_BACKUP_COUNT: rotated files kept (default: 5)
"""

from __future__ import annotations

import inspect
import logging
import os
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Iterator, Optional

import yaml

_trace_id_var: ContextVar[Optional[str]] = ContextVar("websets_trace_id", default=None)

DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_DIR = "logs"
DEFAULT_LOG_FILE = "websets.log"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 5
LINE_FORMAT = "{timestamp} [{level}] [{trace_id}] {filename}:{lineno} - {message}"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_CONFIG_FILE = Path(__file__).parent / "log_config.yaml"

LOG_LEVELS = {"DEBUG": 10, "INFO": 20, "WARNING": 30, "ERROR": 40, "CRITICAL": 50}


class _LogFilesMeta(type):
    """Allows ``LogFiles.ENRICHMENT`` style lookups of configured files."""

    def __getattr__(cls, name: str) -> str:
        files = cls._load()
        key = name.lower()
        if key in files:
            return files[key]
        raise AttributeError(f"Log file '{name}' not found in config")


class LogFiles(metaclass=_LogFilesMeta):
    """Log file paths, relative to the log dir, from ``log_config.yaml``."""

    _files: Optional[Dict[str, str]] = None

    @classmethod
    def _load(cls) -> Dict[str, str]:
        if cls._files is not None:
            return cls._files

        files = {
            "enrichment": "enrichment/enrichment.log",
            "export": "export/export.log",
            "error": "errors/error.log",
        }
        if LOG_CONFIG_FILE.exists():
            with open(LOG_CONFIG_FILE, "r", encoding="utf-8") as f:
                config = yaml.safe_load(f) or {}
            files.update({str(k).lower(): str(v) for k, v in (config.get("files") or {}).items()})
        cls._files = files
        return files

    @classmethod
    def get(cls, name: str) -> str:
        return cls._load().get(name.lower(), f"{name}/{name}.log")


_config: Dict[str, object] = {}
_handlers: Dict[str, RotatingFileHandler] = {}


def _read_env() -> Dict[str, object]:
    return {
        "level": os.environ.get("WEBSETS_LOG_LEVEL", DEFAULT_LOG_LEVEL).upper(),
        "base_dir": os.environ.get("WEBSETS_LOG_DIR", DEFAULT_LOG_DIR),
        "max_bytes": int(os.environ.get("WEBSETS_LOG_MAX_BYTES", DEFAULT_MAX_BYTES)),
        "backup_count": int(os.environ.get("WEBSETS_LOG_BACKUP_COUNT", DEFAULT_BACKUP_COUNT)),
    }


def _handler_for(file: Optional[str]) -> RotatingFileHandler:
    path = Path(str(_config["base_dir"])) / (file or DEFAULT_LOG_FILE)
    key = str(path)
    if key not in _handlers:
        path.parent.mkdir(parents=True, exist_ok=True)
        _handlers[key] = RotatingFileHandler(
            filename=key,
            maxBytes=int(_config["max_bytes"]),
            backupCount=int(_config["backup_count"]),
            encoding="utf-8",
        )
    return _handlers[key]


def _write(level: str, message: str, file: Optional[str]) -> None:
    if not _config:
        Logger.init()
    if LOG_LEVELS.get(level, 0) < LOG_LEVELS.get(str(_config["level"]), 0):
        return

    # two frames up: _write <- Logger.<level> <- caller
    frame = inspect.currentframe()
    caller = frame.f_back.f_back if frame and frame.f_back else None
    filename = os.path.basename(caller.f_code.co_filename) if caller else "unknown"
    lineno = caller.f_lineno if caller else 0

    line = LINE_FORMAT.format(
        timestamp=datetime.now().strftime(DATE_FORMAT),
        level=level,
        trace_id=_trace_id_var.get() or "-",
        filename=filename,
        lineno=lineno,
        message=message,
    )
    _handler_for(file).handle(logging.makeLogRecord({"msg": line, "levelname": level}))


class Logger:
    """Static logger writing to per-concern files under the log dir."""

    @staticmethod
    def init(level: Optional[str] = None, base_dir: Optional[str] = None) -> None:
        _config.clear()
        _config.update(_read_env())
        if level:
            _config["level"] = level.upper()
        if base_dir:
            _config["base_dir"] = base_dir

    @staticmethod
    def debug(message: str, file: Optional[str] = None) -> None:
        _write("DEBUG", message, file)

    @staticmethod
    def info(message: str, file: Optional[str] = None) -> None:
        _write("INFO", message, file)

    @staticmethod
    def warning(message: str, file: Optional[str] = None) -> None:
        _write("WARNING", message, file)

    @staticmethod
    def error(message: str, file: Optional[str] = None) -> None:
        _write("ERROR", message, file)

    @staticmethod
    def close() -> None:
        for handler in _handlers.values():
            handler.close()
        _handlers.clear()


def new_trace_id() -> str:
    return f"req-{uuid.uuid4().hex[:12]}"


def get_trace_id() -> Optional[str]:
    return _trace_id_var.get()


@contextmanager
def trace_context(trace_id: Optional[str] = None) -> Iterator[str]:
    """Bind a trace id for the enclosed block (and tasks spawned inside it)."""
    tid = trace_id or new_trace_id()
    token = _trace_id_var.set(tid)
    try:
        yield tid
    finally:
        _trace_id_var.reset(token)
