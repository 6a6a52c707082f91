"""
Logging configuration for the Telemetry Sync Node
Console plus optional rotating file output, text or JSON. Records logged
inside log_context() carry the task, device family and source key (device
serial or city) they belong to.
"""
import json
import logging
import logging.handlers
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional

CONTEXT_FIELDS = ("task", "family", "source")

TEXT_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s | %(context)s%(message)s'
TEXT_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Per asyncio task: every scheduler loop runs in its own task, so contexts never mix
_log_context: ContextVar[Dict[str, str]] = ContextVar('telemetry_log_context', default={})


@contextmanager
def log_context(**fields: Optional[str]) -> Iterator[None]:
    """
    Tag every record logged inside the block.

    Nested blocks add to the outer fields; None values are ignored.
    """
    merged = dict(_log_context.get())
    merged.update({name: str(value) for name, value in fields.items() if value is not None})
    token = _log_context.set(merged)
    try:
        yield
    finally:
        _log_context.reset(token)


class SyncContextFilter(logging.Filter):
    """Copies the active log_context onto each record, plus a short text prefix"""

    def filter(self, record: logging.LogRecord) -> bool:
        context = _log_context.get()
        for name in CONTEXT_FIELDS:
            if not hasattr(record, name) and name in context:
                setattr(record, name, context[name])
        tags = [f"{name}={getattr(record, name)}" for name in CONTEXT_FIELDS if hasattr(record, name)]
        record.context = f"[{' '.join(tags)}] " if tags else ""
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with task/family/source when set"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "line": record.lineno,
        }
        for name in CONTEXT_FIELDS:
            if hasattr(record, name):
                entry[name] = getattr(record, name)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def _build_handler(handler: logging.Handler, formatter: logging.Formatter, level: int) -> logging.Handler:
    handler.setFormatter(formatter)
    handler.setLevel(level)
    handler.addFilter(SyncContextFilter())
    return handler


def setup_logging(
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    json_format: bool = False,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5
):
    """
    Configure root logging for the node.

    Args:
        level: Log level name; LOG_LEVEL env var when omitted
        log_file: Rotating log file (the maintenance log backup copies these); LOG_FILE env var when omitted
        json_format: JSON lines instead of text; LOG_JSON=true also enables it
        max_bytes: Rotation size
        backup_count: Rotated files to keep
    """
    level_name = (level or os.getenv('LOG_LEVEL', 'INFO')).upper()
    log_level = getattr(logging, level_name, logging.INFO)
    use_json = json_format or os.getenv('LOG_JSON', 'false').lower() == 'true'
    log_path = log_file or os.getenv('LOG_FILE')

    formatter = JSONFormatter() if use_json else logging.Formatter(TEXT_FORMAT, TEXT_DATE_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    root_logger.addHandler(_build_handler(logging.StreamHandler(sys.stdout), formatter, log_level))

    if log_path:
        try:
            log_dir = os.path.dirname(log_path)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                log_path, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
            )
            root_logger.addHandler(_build_handler(file_handler, formatter, log_level))
        except OSError as e:
            logging.warning(f"Could not set up file logging at {log_path}: {e}")

    # Vendor HTTP and database drivers are chatty at INFO
    for noisy in ('aiohttp', 'asyncio', 'asyncpg', 'sqlalchemy.engine'):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        f"Logging configured: level={level_name}, json={use_json}, file={log_path or 'stdout'}"
    )


def setup_logging_from_config():
    """Setup logging from the logging config section and environment variables"""
    try:
        from .config import Config
        log_config = Config.load().get('logging', {})
    except ValueError as e:
        # Invalid config is reported again (and fatally) by the caller
        setup_logging()
        logging.warning(f"Could not load logging config: {e}")
        return

    setup_logging(
        level=log_config.get('level'),
        log_file=log_config.get('log_file'),
        json_format=log_config.get('json_format', False),
        max_bytes=log_config.get('max_bytes', 10 * 1024 * 1024),
        backup_count=log_config.get('backup_count', 5)
    )
