import json
import logging
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx

from .constants import APP_NAME, EVENT_LOG_NAME, VERSION
from .paths import get_queue_path, get_state_dir
from .state import now_iso, write_json_atomic

logger = logging.getLogger(APP_NAME)

Sender = Callable[[dict[str, Any]], bool]

DEFAULT_QUEUE_SIZE = 200
"""int: Queued telemetry items kept before the oldest are dropped."""


class EventLog:
    """Append-only NDJSON event log in .autopilot/events.log.

    External collaborators (focus tracking, dashboards) tail this file;
    the daemon never reads it back.
    """

    def __init__(self, repo_path: Path):
        self.path = get_state_dir(repo_path) / EVENT_LOG_NAME
        self._lock = threading.Lock()

    def append(self, event_type: str, **fields: Any) -> dict[str, Any]:
        """Writes one `{timestamp, type, ...}` line and returns the record."""
        record = {"timestamp": now_iso(), "type": event_type, **fields}
        line = json.dumps(record, default=str)
        with self._lock:
            try:
                with open(self.path, "a") as f:
                    f.write(line + "\n")
            except OSError as e:
                logger.warning(f"Could not write event log {self.path}: {e}")
        return record

    def read(self, limit: int | None = None) -> list[dict[str, Any]]:
        """Returns logged events oldest first, skipping malformed lines."""
        if not self.path.exists():
            return []
        records = []
        with open(self.path) as f:
            for line in f:
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
        return records[-limit:] if limit else records


class OutboundQueue:
    """Durable queue of telemetry events awaiting delivery.

    Stored as a JSON list of `{payload, queuedAt, retryCount}` items in the
    user config directory, so events survive daemon restarts. The oldest
    items are dropped once the queue holds `capacity` entries.
    """

    def __init__(self, path: Path | None = None, capacity: int = DEFAULT_QUEUE_SIZE):
        self.path = path or get_queue_path()
        self.capacity = max(1, capacity)
        self._lock = threading.Lock()
        self._flushing = threading.Lock()

    def items(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text())
        except (OSError, ValueError) as e:
            logger.warning(f"Corrupt event queue {self.path} ({e}). Starting empty.")
            return []
        if not isinstance(data, list):
            logger.warning(f"Corrupt event queue {self.path}. Starting empty.")
            return []
        return [item for item in data if isinstance(item, dict) and "payload" in item]

    def _save(self, items: list[dict[str, Any]]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            write_json_atomic(self.path, items)
        except OSError as e:
            logger.error(f"Failed to save event queue {self.path}: {e}")

    def enqueue(self, payload: dict[str, Any]) -> None:
        with self._lock:
            items = self.items()
            items.append(
                {"payload": payload, "queuedAt": int(time.time() * 1000), "retryCount": 0}
            )
            dropped = len(items) - self.capacity
            if dropped > 0:
                logger.debug(f"Event queue full; dropping {dropped} oldest item(s).")
                items = items[dropped:]
            self._save(items)

    def flush(self, sender: Sender | None) -> int:
        """Attempts delivery of every queued item.

        The queue file is only locked while reading and rewriting it, never
        during delivery, so enqueue() does not wait on the network. A flush
        that starts while another is running returns immediately.

        Args:
            sender (Sender | None): Returns True when an item was delivered.
                With no sender, everything stays queued.

        Returns:
            int: Number of items delivered and removed.
        """
        if sender is None:
            return 0
        if not self._flushing.acquire(blocking=False):
            return 0
        try:
            with self._lock:
                batch = self.items()
            if not batch:
                return 0

            delivered: set[tuple] = set()
            failed: set[tuple] = set()
            for item in batch:
                try:
                    ok = sender(item["payload"])
                except Exception as e:
                    logger.debug(f"Event delivery raised: {e}")
                    ok = False
                (delivered if ok else failed).add(_item_key(item))

            with self._lock:
                remaining = []
                for item in self.items():
                    key = _item_key(item)
                    if key in delivered:
                        continue
                    if key in failed:
                        item["retryCount"] = int(item.get("retryCount", 0)) + 1
                    remaining.append(item)
                self._save(remaining)

            sent = len(delivered)
            if sent:
                logger.debug(f"Flushed {sent} queued event(s), {len(remaining)} pending.")
            return sent
        finally:
            self._flushing.release()


def _item_key(item: dict[str, Any]) -> tuple:
    return item.get("queuedAt"), json.dumps(item["payload"], sort_keys=True, default=str)


class HttpSender:
    """POSTs event payloads as JSON to a telemetry endpoint."""

    def __init__(self, endpoint: str, timeout: float = 5, client: httpx.Client | None = None):
        self.endpoint = endpoint
        self._client = client or httpx.Client(
            timeout=timeout, headers={"User-Agent": f"{APP_NAME}/{VERSION}"}
        )

    def __call__(self, payload: dict[str, Any]) -> bool:
        try:
            response = self._client.post(self.endpoint, json=payload)
        except httpx.HTTPError as e:
            logger.debug(f"Telemetry POST to {self.endpoint} failed: {e}")
            return False
        return response.is_success

    def close(self) -> None:
        self._client.close()


def make_sender(endpoint: str | None, timeout: float = 5) -> HttpSender | None:
    """Returns an HTTP sender when an endpoint is configured, else None."""
    return HttpSender(endpoint, timeout) if endpoint else None
