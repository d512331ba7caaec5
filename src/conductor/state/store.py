from __future__ import annotations

import json
import os
import time
from collections.abc import Callable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from conductor.errors import StateStoreError


class StateStore:
    """JSON-file state: task records, batches, the audit log and learned patterns.

    Each namespace is one file holding a versioned envelope. Writes hold an
    exclusive lock file; read-modify-write updates retry on revision conflicts.
    """

    NAMESPACES = {"tasks", "batches", "audit", "patterns", "work_orders", "context"}
    SCHEMA_VERSION = 1

    def __init__(self, root: Path, *, directory: str = ".conductor") -> None:
        self.root = root.resolve()
        self.state_dir = self.root / directory / "state"
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in StateStore.NAMESPACES:
            raise StateStoreError(f"Unsupported namespace: {namespace}")

    def _file(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StateStoreError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw_json(self, namespace: str) -> Any:
        path = self._file(namespace)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
        path = self._file(namespace)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(serialized, encoding="utf-8")
        os.replace(tmp_path, path)

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or self._utcnow_iso(),
                "data": raw_payload.get("data", default),
            }
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": self._utcnow_iso(),
            "data": default if raw_payload is None else raw_payload,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw_json(namespace), default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace, default={})
            current_revision = int(current.get("revision", 1))
            if expected_revision is not None and expected_revision != current_revision:
                raise StateStoreError(
                    f"Concurrent state update detected for namespace '{namespace}'."
                )
            self._write_raw_json(
                namespace,
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": current_revision + 1,
                    "updated_at": self._utcnow_iso(),
                    "data": data,
                },
            )

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: Exception | None = None
        for _ in range(4):
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(namespace, updated, expected_revision=int(current.get("revision", 1)))
                return updated
            except StateStoreError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise StateStoreError(str(last_error) if last_error else "State update failed.")

    def _append(self, namespace: str, key: str, item: dict[str, Any]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {key: []}
            items = result.get(key)
            if not isinstance(items, list):
                items = []
            items.append(item)
            result[key] = items
            return result

        self.update_json(namespace, _updater, default={key: []})

    def _list(self, namespace: str, key: str) -> list[dict[str, Any]]:
        payload = self.get_json(namespace, default={key: []})
        if not isinstance(payload, dict):
            return []
        items = payload.get(key, [])
        return [item for item in items if isinstance(item, dict)] if isinstance(items, list) else []

    def _put_keyed(self, namespace: str, key: str, record: dict[str, Any]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            result[key] = record
            return result

        self.update_json(namespace, _updater, default={})

    def _keyed(self, namespace: str) -> dict[str, dict[str, Any]]:
        payload = self.get_json(namespace, default={})
        if not isinstance(payload, dict):
            return {}
        return {key: value for key, value in payload.items() if isinstance(value, dict)}

    # Task records, keyed by task id.

    def put_task(self, task: dict[str, Any]) -> None:
        self._put_keyed("tasks", str(task["id"]), task)

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        return self._keyed("tasks").get(task_id)

    def tasks_for_batch(self, batch_id: str) -> list[dict[str, Any]]:
        tasks = [task for task in self._keyed("tasks").values() if task.get("batch_id") == batch_id]
        return sorted(tasks, key=lambda task: int(task.get("order", 0)))

    def tasks_for_session(self, session_id: str) -> list[dict[str, Any]]:
        tasks = [
            task for task in self._keyed("tasks").values() if task.get("session_id") == session_id
        ]
        return sorted(
            tasks, key=lambda task: (str(task.get("created_at", "")), int(task.get("order", 0)))
        )

    # Batches, keyed by batch id.

    def put_batch(self, batch: dict[str, Any]) -> None:
        self._put_keyed("batches", str(batch["id"]), batch)

    def get_batch(self, batch_id: str) -> dict[str, Any] | None:
        return self._keyed("batches").get(batch_id)

    def batches_for_session(self, session_id: str | None = None) -> list[dict[str, Any]]:
        batches = [
            batch
            for batch in self._keyed("batches").values()
            if session_id is None or batch.get("session_id") == session_id
        ]
        return sorted(batches, key=lambda batch: str(batch.get("created_at", "")))

    # Append-only audit log.

    def append_audit(self, entry: dict[str, Any]) -> None:
        self._append("audit", "entries", entry)

    def audit_entries(self) -> list[dict[str, Any]]:
        return self._list("audit", "entries")

    def audit_for_session(self, session_id: str) -> list[dict[str, Any]]:
        return [entry for entry in self.audit_entries() if entry.get("session_id") == session_id]

    # Learned behavioral patterns, keyed by "<type>:<key>".

    def put_pattern(self, pattern: dict[str, Any]) -> None:
        self._put_keyed("patterns", f"{pattern['pattern_type']}:{pattern['pattern_key']}", pattern)

    def get_pattern(self, pattern_type: str, pattern_key: str) -> dict[str, Any] | None:
        return self._keyed("patterns").get(f"{pattern_type}:{pattern_key}")

    def list_patterns(self) -> list[dict[str, Any]]:
        return list(self._keyed("patterns").values())

    # Records produced by tool handlers (tickets, proposals, requests).

    def add_work_order(self, record: dict[str, Any]) -> None:
        self._append("work_orders", "records", record)

    def work_orders(self) -> list[dict[str, Any]]:
        return self._list("work_orders", "records")

    def get_context(self) -> dict[str, Any]:
        context = self.get_json("context", default={})
        return context if isinstance(context, dict) else {}

    def set_context(self, context: dict[str, Any]) -> None:
        self.set_json("context", context)
