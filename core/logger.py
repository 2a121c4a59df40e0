"""
Logging and Audit Trail
=======================

Process logging (rotating system log plus console, optional JSON lines,
a correlation id on every record) and the JSONL audit trail of
lifecycle, account, system and trade entries.

Every log record emitted while a scheduler tick runs carries that
tick's correlation id, so one tick can be followed across strategies.
"""

from __future__ import annotations

import asyncio
import contextvars
import json
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from core.events import Event, EventType


logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Correlation ids
# ----------------------------------------------------------------------

# Copied into tasks created while set
_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "correlation_id", default=None
)


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Bind a correlation id to the current context; a short random one if none given."""
    value = correlation_id or uuid.uuid4().hex[:8]
    _correlation_id.set(value)
    return value


def clear_correlation_id() -> None:
    _correlation_id.set(None)


class CorrelationIdFilter(logging.Filter):
    """Stamps record.correlation_id ("-" outside any tick)."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = _correlation_id.get() or "-"
        return True


# ----------------------------------------------------------------------
# Log formatting and setup
# ----------------------------------------------------------------------

_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "correlation_id", "taskName"}


class StructuredJsonFormatter(logging.Formatter):
    """
    One JSON object per line.

    Warnings and above carry their source location. Attributes passed
    through `extra=` are kept under "extra"; values that are not JSON
    serializable are stored as their str().
    """

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "correlation_id": getattr(record, "correlation_id", None),
            "message": record.getMessage(),
        }
        if record.levelno >= logging.WARNING:
            line["location"] = {"file": record.filename, "line": record.lineno, "function": record.funcName}
        if record.exc_info:
            line["exception"] = self.formatException(record.exc_info)
        if self.include_extra:
            extra = {k: _json_safe(v) for k, v in vars(record).items() if k not in _RECORD_ATTRS}
            if extra:
                line["extra"] = extra
        return json.dumps(line, default=str)


def _json_safe(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


LOG_FORMAT = "%(asctime)s | %(correlation_id)s | %(name)s | %(levelname)s | %(message)s"


def setup_logging(
    log_dir: str = "logs",
    level: str = "INFO",
    use_json: bool = False,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 30,
    console: bool = True,
) -> None:
    """Route the root logger to <log_dir>/system.log (rotating) and, optionally, the console."""
    directory = Path(log_dir)
    directory.mkdir(parents=True, exist_ok=True)

    handlers: list[logging.Handler] = [
        RotatingFileHandler(
            directory / "system.log", maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    ]
    if console:
        handlers.append(logging.StreamHandler())

    formatter = StructuredJsonFormatter() if use_json else logging.Formatter(LOG_FORMAT)
    stamp = CorrelationIdFilter()
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(stamp)

    root = logging.getLogger()
    root.handlers = handlers
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    logger.info(
        f"Logging to {directory / 'system.log'} at {level.upper()} "
        f"({'json' if use_json else 'text'}, rotate at {max_bytes // (1024 * 1024)}MB)"
    )


# ----------------------------------------------------------------------
# Audit trail
# ----------------------------------------------------------------------

@dataclass
class AuditEntry:
    timestamp: str
    entry_type: str
    source: str
    event_id: str | None
    details: dict[str, Any] = field(default_factory=dict)
    correlation_id: str | None = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)


class _RotatingJsonl:
    """
    One append-only JSONL file.

    Once the file reaches max_bytes it becomes name.1.jsonl, older
    generations shift up and the one past backup_count is deleted.
    """

    def __init__(self, path: Path, max_bytes: int, backup_count: int):
        self.path = path
        self.max_bytes = max_bytes
        self.backup_count = backup_count
        path.parent.mkdir(parents=True, exist_ok=True)

    def generation(self, n: int) -> Path:
        return self.path.with_suffix(f".{n}.jsonl")

    def rotate_if_full(self) -> None:
        if not self.path.exists() or self.path.stat().st_size < self.max_bytes:
            return
        logger.info(f"Rotating audit file {self.path}")
        self.generation(self.backup_count).unlink(missing_ok=True)
        for n in range(self.backup_count - 1, 0, -1):
            if self.generation(n).exists():
                self.generation(n).rename(self.generation(n + 1))
        self.path.rename(self.generation(1))

    def append(self, line: str) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line + "\n")

    def read(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]


_TRADE_EVENT_TYPES = frozenset({EventType.TRADE_EXECUTED, EventType.TRADE_FAILED})


class AuditLogger:
    """
    Append-only JSONL audit trail.

    Trade outcomes go to the trade file, everything else to the audit
    file. Without the background writer every entry is written
    synchronously; with it, entries are queued and flushed in batches
    from a worker thread.
    """

    DEFAULT_MAX_BYTES = 50 * 1024 * 1024
    DEFAULT_BACKUP_COUNT = 20
    FLUSH_INTERVAL_SECONDS = 0.1
    FLUSH_BATCH_SIZE = 100
    CONSECUTIVE_FAILURE_ALERT_THRESHOLD = 5

    def __init__(
        self,
        audit_file: str = "logs/audit.jsonl",
        trade_file: str = "logs/trades.jsonl",
        max_bytes: int = DEFAULT_MAX_BYTES,
        backup_count: int = DEFAULT_BACKUP_COUNT,
    ):
        self._audit = _RotatingJsonl(Path(audit_file), max_bytes, backup_count)
        self._trades = _RotatingJsonl(Path(trade_file), max_bytes, backup_count)

        self._pending: asyncio.Queue[tuple[_RotatingJsonl, AuditEntry]] | None = None
        self._worker: asyncio.Task | None = None

        self._written = 0
        self._failed = 0
        self._failure_streak = 0

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    async def start_async_writer(self) -> None:
        if self._worker is not None:
            return
        self._pending = asyncio.Queue()
        self._worker = asyncio.create_task(self._flush_loop(), name="audit-writer")
        logger.info("Audit writer started")

    async def stop_async_writer(self) -> None:
        """Stop the writer; queued entries are written before this returns."""
        if self._worker is None:
            return
        worker, self._worker = self._worker, None
        worker.cancel()
        await asyncio.gather(worker, return_exceptions=True)

        leftover = self._take_batch(limit=None)
        if leftover:
            await asyncio.to_thread(self._write_batch, leftover)
        logger.info(f"Audit writer stopped ({self._written} written, {self._failed} failed)")

    async def _flush_loop(self) -> None:
        assert self._pending is not None
        while True:
            try:
                first = await asyncio.wait_for(self._pending.get(), timeout=self.FLUSH_INTERVAL_SECONDS)
            except asyncio.TimeoutError:
                continue
            batch = [first, *self._take_batch(limit=self.FLUSH_BATCH_SIZE - 1)]
            await asyncio.to_thread(self._write_batch, batch)

    def _take_batch(self, limit: int | None) -> list[tuple[_RotatingJsonl, AuditEntry]]:
        batch: list[tuple[_RotatingJsonl, AuditEntry]] = []
        while self._pending is not None and not self._pending.empty():
            if limit is not None and len(batch) >= limit:
                break
            batch.append(self._pending.get_nowait())
        return batch

    def _write_batch(self, batch: list[tuple[_RotatingJsonl, AuditEntry]]) -> None:
        for target, entry in batch:
            self._write_now(target, entry)

    def _submit(self, target: _RotatingJsonl, entry: AuditEntry) -> None:
        if self._worker is not None and self._pending is not None:
            self._pending.put_nowait((target, entry))
        else:
            self._write_now(target, entry)

    def _write_now(self, target: _RotatingJsonl, entry: AuditEntry) -> None:
        try:
            target.rotate_if_full()
            target.append(entry.to_json())
        except OSError as e:
            self._failed += 1
            self._failure_streak += 1
            logger.error(f"Audit write to {target.path} failed: {e}")
            if self._failure_streak >= self.CONSECUTIVE_FAILURE_ALERT_THRESHOLD:
                logger.critical(f"{self._failure_streak} audit writes failed in a row ({self._failed} in total)")
            return
        self._written += 1
        self._failure_streak = 0

    def get_write_metrics(self) -> dict[str, int]:
        return {
            "write_success": self._written,
            "write_failures": self._failed,
            "consecutive_failures": self._failure_streak,
            "queue_size": self._pending.qsize() if self._pending is not None else 0,
        }

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def _record(
        self,
        target: _RotatingJsonl,
        entry_type: str,
        source: str,
        details: dict[str, Any],
        event_id: str | None = None,
    ) -> None:
        self._submit(target, AuditEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            entry_type=entry_type,
            source=source,
            event_id=event_id,
            details=details,
            correlation_id=get_correlation_id(),
        ))

    def log_event(self, event: Event) -> None:
        """Record a bus event under its event type."""
        target = self._trades if event.event_type in _TRADE_EVENT_TYPES else self._audit
        self._record(target, event.event_type.value, event.source, event.to_audit_dict(), event.event_id)

    def log_strategy_event(self, strategy_name: str, event_type: str, details: dict[str, Any]) -> None:
        self._record(self._audit, f"strategy_{event_type}", strategy_name, details)

    def log_account_event(self, account_id: str, event_type: str, details: dict[str, Any]) -> None:
        self._record(self._audit, f"account_{event_type}", account_id, {"account_id": account_id, **details})

    def log_trade(
        self,
        strategy_name: str,
        account_id: str,
        opportunity_key: str,
        success: bool,
        amount: float,
        details: dict[str, Any] | None = None,
    ) -> None:
        self._record(self._trades, "trade", strategy_name, {
            "account_id": account_id,
            "opportunity_key": opportunity_key,
            "success": success,
            "amount": amount,
            **(details or {}),
        })

    def log_system_event(self, event_type: str, details: dict[str, Any]) -> None:
        self._record(self._audit, f"system_{event_type}", "system", details)
        logger.info(f"Audit: system {event_type}")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_trades(
        self,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        account_id: str | None = None,
    ) -> list[dict]:
        """Trade entries of the current trade file, optionally filtered."""
        trades = []
        for entry in self._trades.read():
            at = datetime.fromisoformat(entry["timestamp"])
            if start_date is not None and at < start_date:
                continue
            if end_date is not None and at > end_date:
                continue
            if account_id is not None and entry["details"].get("account_id") != account_id:
                continue
            trades.append(entry)
        return trades

    def get_entries(self, entry_type: str | None = None) -> list[dict]:
        return [e for e in self._audit.read() if entry_type is None or e["entry_type"] == entry_type]
