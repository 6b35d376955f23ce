# batchbot/logger.py
"""
Console logging and the CSV audit trail of executed trades.

Audit rows are queued in memory so a slow disk never delays a decision
tick. One writer task drains whatever has piled up in a single append.
"""
import asyncio
import logging
import os
import sys
import time
from typing import Any, List, Optional, TextIO

import aiofiles
from aiocsv import AsyncWriter

LOG_FORMAT = '%(asctime)s | %(levelname)s | %(module)s | %(message)s'
AUDIT_HEADER = ["timestamp", "market", "action", "amount", "price", "reason", "wallet", "trade_index"]


class AsyncAuditLogger:
    """One CSV row per executed order leg, appended by a background writer."""

    def __init__(self, filepath: str, logger: Optional[logging.Logger] = None):
        self.filepath = filepath
        self.logger = logger or logging.getLogger("BatchBot")
        self._queue: asyncio.Queue = asyncio.Queue()
        self._writer: Optional[asyncio.Task] = None

    async def start(self):
        folder = os.path.dirname(self.filepath)
        if folder:
            os.makedirs(folder, exist_ok=True)
        # An existing trail is continued, never rewritten
        if not os.path.isfile(self.filepath) or os.path.getsize(self.filepath) == 0:
            await self._append([AUDIT_HEADER])
        self._writer = asyncio.create_task(self._drain())

    def log_trade(self, market: str, action: str, amount: float, price: float, reason: str,
                  wallet: float, trade_index: Optional[int] = None, timestamp: Optional[str] = None):
        self._queue.put_nowait([
            timestamp or time.strftime('%Y-%m-%d %H:%M:%S'),
            market,
            action,
            f"{amount:.4f}",
            f"{price:.8f}",
            reason,
            f"{wallet:.2f}",
            "" if trade_index is None else trade_index,
        ])

    async def _append(self, rows: List[List[Any]]):
        async with aiofiles.open(self.filepath, mode='a', newline='') as f:
            await AsyncWriter(f, dialect='unix').writerows(rows)

    async def _drain(self):
        while True:
            rows = [await self._queue.get()]
            while not self._queue.empty():
                rows.append(self._queue.get_nowait())
            try:
                await self._append(rows)
            except OSError as e:
                # Disk trouble must not stop trading
                self.logger.error(f"❌ Audit log write failed, {len(rows)} row(s) lost: {e}")
            finally:
                for _ in rows:
                    self._queue.task_done()

    async def close(self, timeout: float = 2.0):
        """Waits up to `timeout` for queued rows to reach the file, then stops the writer."""
        if self._writer is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout)
        except asyncio.TimeoutError:
            self.logger.warning(f"⚠️ Audit log closed with {self._queue.qsize()} row(s) unwritten")
        self._writer.cancel()
        self._writer = None


def setup_console_logger(name: str, level: str, stream: Optional[TextIO] = None) -> logging.Logger:
    """
    Console logger shared by every component. Calling it again only changes
    the level; the handler is installed once.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level.upper())
    if not any(h.get_name() == name for h in logger.handlers):
        handler = logging.StreamHandler(stream or sys.stdout)
        handler.set_name(name)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    return logger
