"""
FileExecutionStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    flows.json        flow id → FlowDefinition
    executions.json   execution id → ExecutionState
    logs.json         execution id → [ExecutionLogEntry, ...]

Every mutation rewrites the changed file (tmp file + rename), or marks it
dirty for a batched write when flush_interval_s > 0. Single process only:
the asyncio.Lock inherited from the memory store does not span processes.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from collections import defaultdict
from pathlib import Path
from typing import Any, Optional

from database.store_memory import InMemoryExecutionStore
from models.schemas import ExecutionLogEntry, ExecutionState, FlowDefinition

logger = structlog.get_logger()


class FileExecutionStore(InMemoryExecutionStore):
    """InMemoryExecutionStore whose dicts are mirrored to JSON files."""

    def __init__(self, data_dir: str = "./data", flush_interval_s: float = 0):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._flush_interval = flush_interval_s
        self._dirty: set[str] = set()
        self._flush_task: Optional[asyncio.Task] = None
        for name in self._codecs():
            self._load(name)
        logger.info("file_store_initialized", data_dir=str(self._data_dir),
                    flows=len(self._flows), executions=len(self._executions))

    # name → (dump, restore)
    def _codecs(self) -> dict[str, tuple[Any, Any]]:
        return {
            "flows": (self._dump_flows, self._restore_flows),
            "executions": (self._dump_executions, self._restore_executions),
            "logs": (self._dump_logs, self._restore_logs),
        }

    def _dump_flows(self) -> dict:
        return {fid: f.model_dump(mode="json") for fid, f in self._flows.items()}

    def _restore_flows(self, data: dict) -> None:
        self._flows = {fid: FlowDefinition.model_validate(f) for fid, f in data.items()}

    def _dump_executions(self) -> dict:
        return {eid: e.model_dump(mode="json") for eid, e in self._executions.items()}

    def _restore_executions(self, data: dict) -> None:
        self._executions = {eid: ExecutionState.model_validate(e) for eid, e in data.items()}
        self._active_index = {
            e.conversation_id: eid for eid, e in self._executions.items() if not e.is_terminal
        }

    def _dump_logs(self) -> dict:
        return {eid: [x.model_dump(mode="json") for x in entries]
                for eid, entries in self._logs.items()}

    def _restore_logs(self, data: dict) -> None:
        self._logs = defaultdict(list, {
            eid: [ExecutionLogEntry.model_validate(x) for x in entries]
            for eid, entries in data.items()
        })

    # ── Disk ──────────────────────────────────────────────────

    def _path(self, name: str) -> Path:
        return self._data_dir / f"{name}.json"

    def _load(self, name: str) -> None:
        path = self._path(name)
        if not path.exists():
            return
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError(f"expected an object, got {type(data).__name__}")
            self._codecs()[name][1](data)
        except ValueError as e:
            # JSONDecodeError and pydantic ValidationError are both ValueErrors
            logger.warning("file_store_load_error", collection=name, error=str(e))

    def _write(self, name: str) -> None:
        path = self._path(name)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(self._codecs()[name][0](), indent=2, ensure_ascii=False),
                       encoding="utf-8")
        tmp.replace(path)

    def _on_change(self, collection: str) -> None:
        if self._flush_interval <= 0:
            self._write(collection)
            return
        self._dirty.add(collection)
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.get_running_loop().create_task(self._flush_later())

    async def _flush_later(self) -> None:
        await asyncio.sleep(self._flush_interval)
        dirty, self._dirty = self._dirty, set()
        for name in dirty:
            self._write(name)

    def flush_all(self) -> None:
        """Write every collection now, including pending batched changes."""
        self._dirty.clear()
        for name in self._codecs():
            self._write(name)
        logger.info("file_store_flushed_all")

    async def close(self) -> None:
        """Cancel a pending batched write and persist every collection now."""
        task, self._flush_task = self._flush_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.flush_all()
