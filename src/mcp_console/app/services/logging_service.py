"""Logging for the console backend.

Records go to the console and to a file under ``$MCP_CONSOLE_HOME/logs``.
Which file is decided per record by the conversation bound to the current
context (``conversation_logging``):

    logs/
    ├── server.log                   # tool-server lifecycle, anything unscoped
    └── conversations/
        └── {conversation_id}.log    # response streams of one conversation

Only a bounded number of conversation files are held open. The least
recently written one is closed when the limit is reached, and a
conversation's file is closed as soon as its stream or selection goes away
(``release_conversation_log``). A closed file is reopened in append mode
if the conversation logs again.
"""

import logging
import sys
from collections import OrderedDict
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Iterator, Optional

from mcp_console.app.config import CONVERSATION_LOGS_DIR, LOGS_DIR

_conversation_id: ContextVar[Optional[str]] = ContextVar("conversation_id", default=None)

FILE_FORMAT = logging.Formatter("%(asctime)s | %(levelname)-7s | %(name)s | %(message)s", "%Y-%m-%d %H:%M:%S")
CONSOLE_FORMAT = logging.Formatter("%(levelname)-7s | %(name)s - %(message)s")

MAX_OPEN_CONVERSATION_LOGS = 32

# Third-party loggers that are only interesting at WARNING and above
QUIET_LOGGERS = ("httpx", "httpcore", "mcp", "uvicorn.access", "sse_starlette.sse")


class ConversationLogRouter(logging.Handler):
    """Send each record to server.log or to its conversation's file."""

    def __init__(self, max_open: int = MAX_OPEN_CONVERSATION_LOGS):
        super().__init__()
        self.max_open = max_open
        self._server = self._open(LOGS_DIR / "server.log")
        self._conversations: OrderedDict[str, logging.FileHandler] = OrderedDict()

    @staticmethod
    def _open(path: Path) -> logging.FileHandler:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, encoding="utf-8", delay=True)
        handler.setFormatter(FILE_FORMAT)
        return handler

    def _conversation_handler(self, conversation_id: str) -> logging.FileHandler:
        handler = self._conversations.get(conversation_id)
        if handler is not None:
            self._conversations.move_to_end(conversation_id)
            return handler
        while len(self._conversations) >= self.max_open:
            _, oldest = self._conversations.popitem(last=False)
            oldest.close()
        handler = self._open(CONVERSATION_LOGS_DIR / f"{conversation_id}.log")
        self._conversations[conversation_id] = handler
        return handler

    @property
    def open_conversations(self) -> list[str]:
        return list(self._conversations)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            conversation_id = _conversation_id.get()
            target = self._conversation_handler(conversation_id) if conversation_id else self._server
            target.emit(record)
        except Exception:
            self.handleError(record)

    def close_conversation(self, conversation_id: str) -> bool:
        """Close a conversation's file. Returns False if it was not open."""
        self.acquire()
        try:
            handler = self._conversations.pop(conversation_id, None)
        finally:
            self.release()
        if handler is None:
            return False
        handler.close()
        return True

    def close(self) -> None:
        self._server.close()
        while self._conversations:
            _, handler = self._conversations.popitem()
            handler.close()
        super().close()


_router: Optional[ConversationLogRouter] = None


@contextmanager
def conversation_logging(conversation_id: Optional[str]) -> Iterator[None]:
    """Route records logged inside the block to the conversation's file."""
    if not conversation_id:
        yield
        return
    token = _conversation_id.set(conversation_id)
    try:
        yield
    finally:
        _conversation_id.reset(token)


def release_conversation_log(conversation_id: str) -> bool:
    """Close the conversation's log file if logging is set up and it is open."""
    if _router is None:
        return False
    return _router.close_conversation(conversation_id)


def setup_logging(level: int = logging.INFO) -> None:
    """Install the console and file handlers on the root logger.

    Safe to call more than once; the previous router's files are closed.
    """
    global _router

    if _router is not None:
        _router.close()
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level)

    # Console stream forced to UTF-8 so provider output with odd bytes cannot break logging
    utf8_stdout = open(sys.stdout.fileno(), mode="w", encoding="utf-8", errors="replace", closefd=False)
    console_handler = logging.StreamHandler(utf8_stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(CONSOLE_FORMAT)
    root_logger.addHandler(console_handler)

    _router = ConversationLogRouter()
    _router.setLevel(level)
    root_logger.addHandler(_router)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.info(f"Logging initialized. Logs dir: {LOGS_DIR}")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def _read_lines(path: Path, tail: Optional[int], level: Optional[str] = None) -> list[str]:
    if not path.exists():
        return []
    lines = path.read_text(encoding="utf-8").splitlines()
    if level:
        marker = f"| {level.upper()}"
        lines = [line for line in lines if marker in line]
    if tail and tail > 0:
        lines = lines[-tail:]
    return lines


def read_conversation_logs(
    conversation_id: str,
    tail: Optional[int] = None,
    level: Optional[str] = None,
) -> list[str]:
    """Lines from one conversation's log, optionally filtered by level."""
    return _read_lines(CONVERSATION_LOGS_DIR / f"{conversation_id}.log", tail, level)


def read_server_logs(tail: Optional[int] = 100) -> list[str]:
    return _read_lines(LOGS_DIR / "server.log", tail)
