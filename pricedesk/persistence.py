"""
Workspace persistence.

The whole workspace is stored as one JSON document (``AppSnapshot``).
Two backends share the ``StorageBackend`` interface:

- ``JsonFileStorage``: local file with atomic writes and rotating backups
- ``HttpStorage``: remote document API (``GET /data``, ``POST /data``,
  ``DELETE /tables/{id}``)

``DebouncedSaver`` batches rapid edits into one save and never runs two
saves at once.
"""
import asyncio
import json
import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

import httpx

from pricedesk.config import config
from pricedesk.events import EventBus, StoreEvent, events as default_events
from pricedesk.exceptions import PersistenceError
from pricedesk.models import format_datetime, utcnow
from pricedesk.observability import Timer, get_logger
from pricedesk.resilience import RetryConfig, retry_with_backoff

logger = get_logger(__name__)

BACKUP_PREFIX = "backup_"


def _default_xml_status() -> Dict[str, str]:
    return {"crm": "not_loaded", "prom": "not_loaded"}


# ═══════════════════════════════════════════════════════════════════════════════
# DOCUMENT
# ═══════════════════════════════════════════════════════════════════════════════

# attribute -> (document key, expected type, default factory)
_SECTIONS = {
    "tables": ("tables", list, list),
    "global_commissions": ("globalCommissions", dict, dict),
    "global_item_changes": ("globalItemChanges", dict, dict),
    "categories": ("categories", dict, dict),
    "xml_last_update": ("xmlLastUpdate", dict, dict),
    "xml_data_counts": ("xmlDataCounts", dict, dict),
    "available_crm_categories": ("availableCrmCategories", list, list),
    "table_xml_data": ("tableXmlData", dict, dict),
    "table_xml_loading_status": ("tableXmlLoadingStatus", dict, dict),
    "global_crm_data": ("globalCrmData", dict, dict),
    "global_prom_data": ("globalPromData", dict, dict),
    "global_xml_loading_status": ("globalXmlLoadingStatus", dict, _default_xml_status),
}


@dataclass
class AppSnapshot:
    """Serialized workspace state, section by section."""
    tables: List[Dict[str, Any]] = field(default_factory=list)
    global_commissions: Dict[str, Any] = field(default_factory=dict)
    global_item_changes: Dict[str, Any] = field(default_factory=dict)
    categories: Dict[str, Any] = field(default_factory=dict)
    xml_last_update: Dict[str, Any] = field(default_factory=dict)
    xml_data_counts: Dict[str, Any] = field(default_factory=dict)
    available_crm_categories: List[Any] = field(default_factory=list)
    table_xml_data: Dict[str, Any] = field(default_factory=dict)
    table_xml_loading_status: Dict[str, Any] = field(default_factory=dict)
    global_crm_data: Dict[str, Any] = field(default_factory=dict)
    global_prom_data: Dict[str, Any] = field(default_factory=dict)
    global_xml_loading_status: Dict[str, Any] = field(default_factory=_default_xml_status)
    last_saved: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "AppSnapshot":
        """
        Build a snapshot from a stored document.

        Missing or wrongly-typed sections fall back to empty defaults.
        """
        if not isinstance(data, dict):
            logger.warning("Stored document is not an object, using empty state")
            return cls()

        values = {}
        for attr, (key, expected, default) in _SECTIONS.items():
            value = data.get(key)
            if isinstance(value, expected):
                values[attr] = value
            else:
                if value is not None:
                    logger.warning(f"Ignoring malformed section {key}", extra={"section": key})
                values[attr] = default()

        last_saved = data.get("lastSaved")
        return cls(last_saved=str(last_saved) if last_saved else None, **values)

    def to_dict(self) -> Dict[str, Any]:
        document = {key: getattr(self, attr) for attr, (key, _, _) in _SECTIONS.items()}
        document["lastSaved"] = self.last_saved
        return document

    def find_table(self, table_id: str) -> Optional[Dict[str, Any]]:
        for table in self.tables:
            if str(table.get("id")) == str(table_id):
                return table
        return None

    def remove_table(self, table_id: str) -> bool:
        """
        Drop a table and its table-scoped feed data.

        Returns:
            False if no table had that id
        """
        table = self.find_table(table_id)
        if table is None:
            return False
        self.tables.remove(table)
        self.table_xml_data.pop(str(table_id), None)
        self.table_xml_loading_status.pop(str(table_id), None)
        return True


class StorageBackend(Protocol):
    """Where workspace documents are loaded from and saved to."""

    async def load(self) -> AppSnapshot:
        ...

    async def save(self, snapshot: AppSnapshot) -> None:
        ...

    async def delete_table(self, table_id: str) -> bool:
        ...


# ═══════════════════════════════════════════════════════════════════════════════
# LOCAL FILE
# ═══════════════════════════════════════════════════════════════════════════════

class JsonFileStorage:
    """
    JSON file store.

    Every save first copies the current file into ``backups/`` (keeping the
    newest ``max_backups``), then writes a temp file, re-reads it to make
    sure it parses, and renames it over the main file.

    Usage:
        storage = JsonFileStorage("data")
        snapshot = await storage.load()
    """

    def __init__(
        self,
        data_dir: Union[str, Path, None] = None,
        max_backups: int = None,
        file_name: str = "data.json",
    ):
        self.data_dir = Path(data_dir or config.persistence.data_dir)
        self.data_file = self.data_dir / file_name
        self.backup_dir = self.data_dir / "backups"
        self.max_backups = config.persistence.max_backups if max_backups is None else max_backups

    def _ensure_directories(self) -> None:
        self.backup_dir.mkdir(parents=True, exist_ok=True)

    def backups(self) -> List[Path]:
        """Backup files, newest first."""
        if not self.backup_dir.exists():
            return []
        files = [
            p for p in self.backup_dir.iterdir()
            if p.name.startswith(BACKUP_PREFIX) and p.suffix == ".json"
        ]
        return sorted(files, key=lambda p: p.name, reverse=True)

    def create_backup(self) -> Optional[Path]:
        """Copy the main file into the backup directory and prune old backups."""
        self._ensure_directories()
        if not self.data_file.exists():
            return None

        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        backup_path = self.backup_dir / f"{BACKUP_PREFIX}{stamp}.json"
        shutil.copyfile(self.data_file, backup_path)
        logger.debug("Backup created", extra={"backup": backup_path.name})

        for old in self.backups()[self.max_backups:]:
            old.unlink()
            logger.debug("Old backup removed", extra={"backup": old.name})

        return backup_path

    def restore_from_backup(self) -> Optional[AppSnapshot]:
        """Latest backup that parses, or None."""
        for backup in self.backups():
            try:
                data = json.loads(backup.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.warning(f"Unreadable backup {backup.name}: {e}")
                continue
            logger.info("Restored from backup", extra={"backup": backup.name})
            return AppSnapshot.from_dict(data)
        return None

    def _read(self) -> AppSnapshot:
        data = json.loads(self.data_file.read_text(encoding="utf-8"))
        snapshot = AppSnapshot.from_dict(data)
        logger.info(
            "Workspace loaded",
            extra={"tables": len(snapshot.tables), "commissions": len(snapshot.global_commissions)},
        )
        return snapshot

    def _write(self, snapshot: AppSnapshot) -> None:
        temp_file = self.data_file.with_name(self.data_file.name + ".tmp")
        try:
            self.create_backup()
            with Timer("json_file_save", logger):
                payload = json.dumps(snapshot.to_dict(), ensure_ascii=False, indent=2)
                temp_file.write_text(payload, encoding="utf-8")
                json.loads(temp_file.read_text(encoding="utf-8"))
                os.replace(temp_file, self.data_file)
        except (OSError, TypeError, ValueError) as e:
            if temp_file.exists():
                temp_file.unlink()
            raise PersistenceError("Failed to write workspace file", str(e)) from e

    def load_sync(self) -> AppSnapshot:
        """
        Load the workspace document.

        Falls back to the newest readable backup (which is then written back
        as the main file), and to an empty state when there is none.
        """
        try:
            return self._read()
        except (OSError, ValueError) as e:
            logger.warning(f"Main data file unavailable: {e}")

        restored = self.restore_from_backup()
        if restored is not None:
            self._write(restored)
            return restored

        logger.info("Starting with empty workspace")
        return AppSnapshot()

    def save_sync(self, snapshot: AppSnapshot) -> None:
        snapshot.last_saved = format_datetime(utcnow())
        self._write(snapshot)

    def delete_table_sync(self, table_id: str) -> bool:
        snapshot = self.load_sync()
        if not snapshot.remove_table(table_id):
            logger.info("Table already absent", extra={"table_id": table_id})
            return False
        self.save_sync(snapshot)
        return True

    async def load(self) -> AppSnapshot:
        return await asyncio.to_thread(self.load_sync)

    async def save(self, snapshot: AppSnapshot) -> None:
        await asyncio.to_thread(self.save_sync, snapshot)

    async def delete_table(self, table_id: str) -> bool:
        return await asyncio.to_thread(self.delete_table_sync, table_id)


# ═══════════════════════════════════════════════════════════════════════════════
# REMOTE API
# ═══════════════════════════════════════════════════════════════════════════════

RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay=0.5,
    max_delay=5.0,
    exponential_base=2.0
)


class HttpStorage:
    """
    Async client for the workspace document API.

    Transport errors and 5xx responses are retried; 4xx responses fail
    immediately.

    Usage:
        async with HttpStorage("http://localhost:3001/api") as storage:
            snapshot = await storage.load()
    """

    def __init__(
        self,
        base_url: str = None,
        timeout: float = None,
        retry_config: RetryConfig = RETRY_CONFIG,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or config.persistence.api_url).rstrip("/")
        self.timeout = timeout or config.persistence.request_timeout
        self.retry_config = retry_config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def connect(self) -> None:
        """Create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"},
                transport=self._transport,
            )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HttpStorage":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Execute a single request (called by retry wrapper)."""
        response = await self._client.request(method, path, **kwargs)
        if response.status_code >= 500:
            response.raise_for_status()
        if response.status_code >= 400:
            raise PersistenceError(
                f"API error: {response.status_code}",
                response.text[:200],
                status_code=response.status_code
            )
        return response

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        if not self._client:
            await self.connect()

        try:
            return await retry_with_backoff(
                self._send,
                method,
                path,
                config=self.retry_config,
                retryable_exceptions=(httpx.TransportError, httpx.HTTPStatusError),
                **kwargs
            )
        except httpx.HTTPStatusError as e:
            raise PersistenceError(
                f"API error: {e.response.status_code}",
                e.response.text[:200],
                status_code=e.response.status_code
            ) from e
        except httpx.TimeoutException as e:
            raise PersistenceError(f"Request timeout after {self.timeout}s", path) from e
        except httpx.TransportError as e:
            raise PersistenceError("Backend unreachable", str(e)) from e

    async def load(self) -> AppSnapshot:
        response = await self._request("GET", "/data")
        try:
            data = response.json()
        except ValueError as e:
            raise PersistenceError("Backend returned invalid JSON", str(e)) from e
        return AppSnapshot.from_dict(data)

    async def save(self, snapshot: AppSnapshot) -> None:
        snapshot.last_saved = format_datetime(utcnow())
        await self._request("POST", "/data", json=snapshot.to_dict())
        logger.debug("Workspace saved", extra={"tables": len(snapshot.tables)})

    async def delete_table(self, table_id: str) -> bool:
        await self._request("DELETE", f"/tables/{table_id}")
        return True


# ═══════════════════════════════════════════════════════════════════════════════
# DEBOUNCED SAVING
# ═══════════════════════════════════════════════════════════════════════════════

class SaveStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    SAVING = "saving"
    SAVED = "saved"
    ERROR = "error"


class DebouncedSaver:
    """
    Coalesces save requests.

    ``request_save()`` (re)starts a short timer; when it fires the current
    snapshot is saved. Saves are serialized: a request arriving during a
    save leads to exactly one follow-up save. A failed save sets status
    ``error`` and emits ``SAVE_FAILED``; the changes stay pending so the
    next ``flush()`` retries them.

    Usage:
        saver = DebouncedSaver(storage, workspace.snapshot)
        saver.request_save()
        await saver.flush()
    """

    def __init__(
        self,
        storage: StorageBackend,
        snapshot: Callable[[], AppSnapshot],
        delay: float = None,
        event_bus: Optional[EventBus] = None,
    ):
        self._storage = storage
        self._snapshot = snapshot
        self.delay = config.persistence.debounce_seconds if delay is None else delay
        self._events = event_bus or default_events
        self._lock = asyncio.Lock()
        self._timer: Optional[asyncio.Task] = None
        self._dirty = False
        self.status = SaveStatus.IDLE
        self.last_error: Optional[str] = None
        self.save_count = 0

    @property
    def pending(self) -> bool:
        return self._dirty

    def request_save(self) -> None:
        """Schedule a save; must be called from a running event loop."""
        self._dirty = True
        if self.status != SaveStatus.SAVING:
            self.status = SaveStatus.PENDING
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().create_task(self._delayed_save())

    async def _delayed_save(self) -> None:
        await asyncio.sleep(self.delay)
        self._timer = None
        await self._save()

    async def _save(self) -> None:
        async with self._lock:
            if not self._dirty:
                return
            self._dirty = False
            self.status = SaveStatus.SAVING
            snapshot = self._snapshot()

            try:
                await self._storage.save(snapshot)
            except PersistenceError as e:
                logger.error(f"Save failed: {e}", extra={"status_code": e.status_code})
                await self._fail(str(e))
                return
            except Exception as e:
                logger.exception(f"Unexpected save error: {e}")
                await self._fail(str(e))
                return

            self.save_count += 1
            self.last_error = None
            self.status = SaveStatus.PENDING if self._dirty else SaveStatus.SAVED
            await self._events.emit(
                StoreEvent.SAVE_COMPLETED,
                {"tables": len(snapshot.tables), "last_saved": snapshot.last_saved},
            )

    async def _fail(self, error: str) -> None:
        # Keep the changes pending so the next flush retries them.
        self._dirty = True
        self.status = SaveStatus.ERROR
        self.last_error = error
        await self._events.emit(StoreEvent.SAVE_FAILED, {"error": error})

    async def flush(self) -> None:
        """Save now if anything is pending, skipping the timer."""
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
            self._timer = None
        await self._save()

    async def close(self) -> None:
        await self.flush()
