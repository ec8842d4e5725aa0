from __future__ import annotations

import copy
import json
import os
import re
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol

from redis import Redis

from agentrelay.config import Settings, TraceBackend
from agentrelay.logging import get_logger
from agentrelay.service.errors import ConfigError, ValidationError

logger = get_logger(__name__)

_TASK_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$")
DEFAULT_LIST_LIMIT = 50


def validate_task_id(task_id: str) -> str:
    if not isinstance(task_id, str) or not _TASK_ID_RE.match(task_id):
        raise ValidationError("invalid task id", detail={"task_id": str(task_id)[:64]})
    return task_id


def _matches(trace: Mapping[str, Any], org_id: Optional[str], workflow_name: Optional[str]) -> bool:
    if org_id is not None and trace.get("orgId") != org_id:
        return False
    if workflow_name is not None and trace.get("workflowName") != workflow_name:
        return False
    return True


def _newest_first(traces: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(traces, key=lambda t: t.get("startedAt") or "", reverse=True)


class TraceStore(Protocol):
    def save(self, trace: Mapping[str, Any]) -> None:
        ...

    def get(self, task_id: str) -> Optional[Dict[str, Any]]:
        ...

    def list_traces(
        self,
        *,
        org_id: Optional[str] = None,
        workflow_name: Optional[str] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> List[Dict[str, Any]]:
        ...


class MemoryTraceStore:
    """Process-local trace store."""

    def __init__(self) -> None:
        self._traces: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()

    def save(self, trace: Mapping[str, Any]) -> None:
        task_id = validate_task_id(trace["taskId"])
        with self._lock:
            self._traces[task_id] = copy.deepcopy(dict(trace))

    def get(self, task_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            found = self._traces.get(task_id)
            return copy.deepcopy(found) if found is not None else None

    def list_traces(
        self,
        *,
        org_id: Optional[str] = None,
        workflow_name: Optional[str] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> List[Dict[str, Any]]:
        with self._lock:
            items = [copy.deepcopy(t) for t in self._traces.values() if _matches(t, org_id, workflow_name)]
        return _newest_first(items)[: max(limit, 0)]

    def clear(self) -> None:
        with self._lock:
            self._traces.clear()


class FileTraceStore:
    """One JSON document per trace under ``root``, replaced atomically on save."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, task_id: str) -> Path:
        return self.root / f"{validate_task_id(task_id)}.json"

    def save(self, trace: Mapping[str, Any]) -> None:
        path = self._path(trace["taskId"])
        data = json.dumps(trace, indent=2, default=str)
        with self._lock:
            fd, tmp_path = tempfile.mkstemp(dir=str(self.root), prefix=".trace_", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(data)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_path, path)
            except OSError as exc:
                try:
                    os.unlink(tmp_path)
                except FileNotFoundError:
                    pass
                logger.error("trace_persist_failed", path=str(path), error=str(exc))
                raise

    def get(self, task_id: str) -> Optional[Dict[str, Any]]:
        path = self._path(task_id)
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as exc:
            logger.warning("trace_file_corrupt", path=str(path), error=str(exc))
            return None

    def list_traces(
        self,
        *,
        org_id: Optional[str] = None,
        workflow_name: Optional[str] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        for path in self.root.glob("*.json"):
            try:
                trace = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                continue
            if _matches(trace, org_id, workflow_name):
                items.append(trace)
        return _newest_first(items)[: max(limit, 0)]


class RedisTraceCache:
    """Traces in Redis under ``trace:{task_id}`` with a time-ordered index.

    Meant for live status polling across processes; entries expire after
    ``ttl_seconds``.
    """

    INDEX_KEY = "trace:index"

    def __init__(
        self,
        redis_url: str,
        *,
        ttl_seconds: int = 7 * 24 * 3600,
        socket_timeout: float = 5.0,
        client: Optional[Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.ttl_seconds = ttl_seconds
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    def save(self, trace: Mapping[str, Any]) -> None:
        task_id = validate_task_id(trace["taskId"])
        pipe = self.client.pipeline()
        pipe.set(f"trace:{task_id}", json.dumps(trace, default=str), ex=self.ttl_seconds)
        pipe.zadd(self.INDEX_KEY, {task_id: time.time()}, nx=True)
        pipe.execute()

    def get(self, task_id: str) -> Optional[Dict[str, Any]]:
        cached = self.client.get(f"trace:{validate_task_id(task_id)}")
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

    def list_traces(
        self,
        *,
        org_id: Optional[str] = None,
        workflow_name: Optional[str] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        expired: List[str] = []
        for task_id in self.client.zrevrange(self.INDEX_KEY, 0, -1):
            trace = self.get(task_id)
            if trace is None:
                expired.append(task_id)
                continue
            if _matches(trace, org_id, workflow_name):
                items.append(trace)
                if len(items) >= limit:
                    break
        if expired:
            self.client.zrem(self.INDEX_KEY, *expired)
        return items


def build_trace_store(settings: Settings) -> TraceStore:
    backend = TraceBackend(settings.trace_backend)
    if backend is TraceBackend.MEMORY:
        return MemoryTraceStore()
    if backend is TraceBackend.REDIS:
        if not settings.redis_url:
            raise ConfigError("TRACE_BACKEND=redis requires REDIS_URL")
        return RedisTraceCache(settings.redis_url, ttl_seconds=settings.trace_ttl_seconds)
    return FileTraceStore(settings.trace_dir)


__all__ = [
    "FileTraceStore",
    "MemoryTraceStore",
    "RedisTraceCache",
    "TraceStore",
    "build_trace_store",
    "validate_task_id",
]
