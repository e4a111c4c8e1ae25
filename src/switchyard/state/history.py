from __future__ import annotations

import copy
import json
import os
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from switchyard.errors import SwitchyardError


class HistoryStoreError(SwitchyardError):
    """Raised when history reads or writes fail."""


class HistoryStore:
    """Append-only routing and coordination history.

    Each namespace is one JSON envelope ``{schema_version, revision,
    updated_at, data}``. With ``root=None`` the envelopes live in memory.
    Records are flat dicts; new fields may be added, existing ones are
    never renamed.
    """

    NAMESPACES = {"records", "events"}
    SCHEMA_VERSION = 1

    def __init__(self, root: Path | None = None, *, max_records: int = 1000) -> None:
        if max_records <= 0:
            raise HistoryStoreError("max_records must be positive.")
        self.max_records = max_records
        self.root = root.resolve() if root is not None else None
        self._memory: dict[str, dict[str, Any]] = {}
        if self.root is not None:
            self.root.mkdir(parents=True, exist_ok=True)
            self.lock_file = self.root / ".lock"

    @property
    def persistent(self) -> bool:
        return self.root is not None

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in HistoryStore.NAMESPACES:
            raise HistoryStoreError(f"Unsupported namespace: {namespace}")

    def _file(self, namespace: str) -> Path:
        assert self.root is not None
        return self.root / f"{namespace}.json"

    @contextmanager
    def _lock(self, timeout_seconds: float = 3.0) -> Iterator[None]:
        if self.root is None:
            yield
            return
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise HistoryStoreError("Timed out waiting for history lock.") from exc
                time.sleep(0.02)
        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw(self, namespace: str) -> Any:
        if self.root is None:
            return copy.deepcopy(self._memory.get(namespace))
        path = self._file(namespace)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise HistoryStoreError(f"Corrupt history file {path}: {exc}") from exc

    def _write_raw(self, namespace: str, envelope: dict[str, Any]) -> None:
        if self.root is None:
            self._memory[namespace] = copy.deepcopy(envelope)
            return
        serialized = json.dumps(envelope, ensure_ascii=False, separators=(",", ":"))
        self._file(namespace).write_text(serialized, encoding="utf-8")

    def get_envelope(self, namespace: str) -> dict[str, Any]:
        self._validate_namespace(namespace)
        raw = self._read_raw(namespace)
        if isinstance(raw, dict) and {"schema_version", "revision", "data"} <= raw.keys():
            return {
                "schema_version": int(raw["schema_version"]),
                "revision": int(raw["revision"]),
                "updated_at": raw.get("updated_at") or self._utcnow_iso(),
                "data": raw["data"] if isinstance(raw["data"], list) else [],
            }
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 0,
            "updated_at": self._utcnow_iso(),
            "data": [],
        }

    def _set(self, namespace: str, data: list[dict[str, Any]], expected_revision: int) -> None:
        with self._lock():
            current = self.get_envelope(namespace)
            if current["revision"] != expected_revision:
                raise HistoryStoreError(f"Concurrent history update detected for '{namespace}'.")
            self._write_raw(
                namespace,
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": expected_revision + 1,
                    "updated_at": self._utcnow_iso(),
                    "data": data,
                },
            )

    def _update(
        self, namespace: str, updater: Callable[[list[dict[str, Any]]], list[dict[str, Any]]]
    ) -> None:
        last_error: HistoryStoreError | None = None
        for _ in range(4):
            current = self.get_envelope(namespace)
            updated = updater(list(current["data"]))
            try:
                self._set(namespace, updated, current["revision"])
                return
            except HistoryStoreError as exc:
                last_error = exc
                if "Concurrent history update" not in str(exc):
                    raise
                time.sleep(0.01)
        raise last_error or HistoryStoreError("History update failed.")

    def append(self, namespace: str, record: dict[str, Any]) -> dict[str, Any]:
        entry = dict(record)
        entry.setdefault("recorded_at", self._utcnow_iso())

        def _append(items: list[dict[str, Any]]) -> list[dict[str, Any]]:
            items.append(entry)
            return items[-self.max_records :]

        self._update(namespace, _append)
        return entry

    def append_routing(self, record: dict[str, Any]) -> dict[str, Any]:
        return self.append("records", {**record, "kind": "routing"})

    def append_workflow(self, record: dict[str, Any]) -> dict[str, Any]:
        return self.append("records", {**record, "kind": "workflow"})

    def record_event(self, event: dict[str, Any]) -> None:
        self.append("events", event)

    def records(self, *, kind: str | None = None, task_id: str | None = None) -> list[dict[str, Any]]:
        items = self.get_envelope("records")["data"]
        return [
            item
            for item in items
            if (kind is None or item.get("kind") == kind)
            and (task_id is None or item.get("task_id") == task_id)
        ]

    def events(self) -> list[dict[str, Any]]:
        return list(self.get_envelope("events")["data"])
