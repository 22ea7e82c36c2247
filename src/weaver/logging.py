import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterable, Iterator, Optional

# Context variable to track the upload session across threads and retries
session_id_ctx: ContextVar[Optional[str]] = ContextVar("session_id", default=None)

# Client libraries that log every request at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "botocore", "boto3", "urllib3")


def new_session_id() -> str:
    """Generate a fresh upload session id (one per attempt, never reused)."""
    return f"upl_{uuid.uuid4().hex}"


def get_session_id() -> Optional[str]:
    """Retrieve the upload session id bound to the current context, if any."""
    return session_id_ctx.get()


@contextmanager
def bind_session_id(session_id: str) -> Iterator[str]:
    """Bind session_id to every log line emitted inside the block."""
    token = session_id_ctx.set(session_id)
    try:
        yield session_id
    finally:
        session_id_ctx.reset(token)


class SessionIDFilter(logging.Filter):
    """Injects session_id into log records."""
    def filter(self, record):
        record.session_id = get_session_id() or "-"
        return True


def configure_logging(level: str = "INFO", quiet: Iterable[str] = NOISY_LOGGERS):
    """Configures the root logger with a standard format including session_id."""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers to avoid duplication
    if logger.handlers:
        logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | [%(session_id)s] | %(name)s:%(funcName)s:%(lineno)d - %(message)s"
    )
    handler.setFormatter(formatter)
    handler.addFilter(SessionIDFilter())

    logger.addHandler(handler)

    # Silence noisy libraries
    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)

# Initialize logging on import with default settings
configure_logging()
logger = logging.getLogger("weaver")
