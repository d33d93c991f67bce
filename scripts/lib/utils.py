"""
Utility functions for Contribution Hub.
Atomic JSON file writes/reads, bounded async batching, date-window helpers
and safe number coercion.

Usage:
    from scripts.lib.utils import atomic_write_json, read_json, day_window_ms
"""
import asyncio
import json
import os
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from scripts.lib.logger import setup_logger

logger = setup_logger(__name__)

MS_PER_DAY = 86_400_000
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

T = TypeVar("T")
R = TypeVar("R")


def atomic_write_json(data: Dict, file_path: str | Path, indent: int = 2) -> bool:
    """
    Write JSON data to file atomically using temp file + rename.
    Prevents data corruption if the program crashes during write.

    Args:
        data: Dictionary to serialize as JSON.
        file_path: Target file path.
        indent: JSON indentation level.

    Returns:
        True if successful, False otherwise.
    """
    file_path = Path(file_path)
    temp_path = file_path.with_suffix(file_path.suffix + ".tmp")

    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)

        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=indent, default=str)

        os.replace(temp_path, file_path)
        logger.debug("Atomically wrote JSON to %s", file_path)
        return True

    except (OSError, TypeError, ValueError) as e:
        logger.error("Failed to write JSON to %s: %s", file_path, e)
        if temp_path.exists():
            temp_path.unlink()
        return False


def read_json(file_path: str | Path) -> Optional[Dict]:
    """Read a JSON file, returning None if it is missing or unreadable."""
    file_path = Path(file_path)
    if not file_path.exists():
        return None
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error("Failed to read JSON from %s: %s", file_path, e)
        return None


def safe_int(val: Any, default: int = 0) -> int:
    """Safely convert a value (str, float, None) to int."""
    if val is None or isinstance(val, bool):
        return default
    try:
        return int(float(val))
    except (ValueError, TypeError, OverflowError):
        return default


def safe_float(val: Any, default: float = 0.0) -> float:
    """Safely convert a value to float."""
    if val is None or val == "":
        return default
    try:
        return float(val)
    except (ValueError, TypeError):
        return default


def parse_ts_ms(value: Any) -> int:
    """
    Coerce a HubSpot timestamp to epoch milliseconds.

    HubSpot returns either epoch-ms strings or ISO-8601 strings depending
    on the endpoint. Anything unparseable becomes 0 (invalid).
    """
    if value is None or value == "":
        return 0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    text = str(value).strip()
    try:
        return safe_int(float(text))
    except ValueError:
        pass
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return 0
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - EPOCH) // timedelta(milliseconds=1)


def day_window_ms(start: date, end: date) -> Tuple[int, int]:
    """Inclusive UTC window [start 00:00:00.000, end 23:59:59.999] in epoch ms."""
    start_dt = datetime.combine(start, time.min, tzinfo=timezone.utc)
    end_dt = datetime.combine(end, time.min, tzinfo=timezone.utc)
    start_ms = int(start_dt.timestamp()) * 1000
    end_ms = int(end_dt.timestamp()) * 1000 + MS_PER_DAY - 1
    return start_ms, end_ms


def now_iso() -> str:
    """Current UTC time as ISO-8601."""
    return datetime.now(timezone.utc).isoformat()


async def gather_in_batches(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    batch_size: int,
    pause_seconds: float = 0.0,
    on_batch: Optional[Callable[[int], Awaitable[None]]] = None,
) -> List[R]:
    """
    Run ``worker`` over ``items`` in concurrent batches of ``batch_size``,
    sleeping ``pause_seconds`` between batches.

    Workers are expected to handle their own per-item failures; results
    come back in input order. ``on_batch(done)`` is awaited after each batch.
    An exception escaping a worker cancels the rest of its batch and is
    re-raised once the cancelled workers have unwound; later batches never
    start.
    """
    batch_size = max(1, batch_size)
    results: List[R] = []
    for i in range(0, len(items), batch_size):
        tasks = [asyncio.ensure_future(worker(item)) for item in items[i:i + batch_size]]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        finally:
            pending = [t for t in tasks if not t.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        errors = [t.exception() for t in tasks if not t.cancelled() and t.exception() is not None]
        if errors:
            raise errors[0]
        results.extend(t.result() for t in tasks)
        if on_batch is not None:
            await on_batch(len(results))
        if pause_seconds and i + batch_size < len(items):
            await asyncio.sleep(pause_seconds)
    return results
