"""
Logging setup for proxy processes: rotating log files and session context.
"""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


class SessionContextFilter(logging.Filter):
    """
    Stamp every record with the agentless session and asset it belongs to.

    A proxy process works on exactly one session at a time, so the context
    is set once per command and shared by every logger under 'agentless'.
    """

    def __init__(self):
        super().__init__()
        self.session_id: str = "-"
        self.asset_key: str = "-"

    def set_context(self, session_id: Optional[str] = None, asset_key: Optional[str] = None):
        """Set the session id and asset key stamped onto records."""
        if session_id is not None:
            self.session_id = session_id
        if asset_key is not None:
            self.asset_key = asset_key

    def filter(self, record: logging.LogRecord) -> bool:
        record.session_id = self.session_id
        record.asset_key = self.asset_key
        return True


# Global instances
_context_filter = None
_file_log_handler = None

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(session_id)s/%(asset_key)s] - %(message)s'


def get_context_filter() -> SessionContextFilter:
    """Get the global session context filter."""
    global _context_filter
    if _context_filter is None:
        _context_filter = SessionContextFilter()
    return _context_filter


def set_session_context(session_id: Optional[str] = None, asset_key: Optional[str] = None):
    """Set the session context for all subsequent log records."""
    get_context_filter().set_context(session_id, asset_key)


def get_file_log_handler(
    log_dir: str,
    max_bytes: int = 50 * 1024 * 1024,
    backup_count: int = 5
) -> RotatingFileHandler:
    """Get the global file log handler instance, reopening it if log_dir changed."""
    global _file_log_handler
    log_path = Path(log_dir)
    if _file_log_handler is not None and Path(_file_log_handler.baseFilename).parent != log_path.absolute():
        logging.getLogger("agentless").removeHandler(_file_log_handler)
        _file_log_handler.close()
        _file_log_handler = None

    if _file_log_handler is None:
        log_path.mkdir(parents=True, exist_ok=True)

        _file_log_handler = RotatingFileHandler(
            filename=str(log_path / "agentless.log"),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        _file_log_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        _file_log_handler.addFilter(get_context_filter())

    return _file_log_handler


def setup_logging(
    level: str = "INFO",
    log_dir: Optional[str] = None,
    max_bytes: int = 50 * 1024 * 1024,
    backup_count: int = 5
):
    """
    Attach stderr and (optionally) rotating file handlers to the 'agentless' logger.

    Only the application logger is configured; the root logger is left alone.
    """
    logger = logging.getLogger("agentless")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    if not any(getattr(h, "_agentless_stream", False) for h in logger.handlers):
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        stream_handler.addFilter(get_context_filter())
        stream_handler._agentless_stream = True
        logger.addHandler(stream_handler)

    if log_dir:
        try:
            file_handler = get_file_log_handler(log_dir, max_bytes, backup_count)
            if file_handler not in logger.handlers:
                logger.addHandler(file_handler)
        except OSError as e:
            logger.warning(f"File logging disabled, cannot write to {log_dir}: {e}")

    return logger


def reset_logging():
    """Detach and close every handler setup_logging attached, and forget the singletons."""
    global _context_filter, _file_log_handler
    logger = logging.getLogger("agentless")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    _file_log_handler = None
    _context_filter = None
