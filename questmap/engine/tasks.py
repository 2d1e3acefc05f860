# questmap/engine/tasks.py
"""
Task Source adapters.

The engine only ever *reads* task lists from the external to-do provider
(plus one write: marking a task completed). Everything it reads is frozen
into a TaskSnapshot so a single request evaluates every objective against
the same point-in-time view.

Provides:
- Task / TaskSnapshot value types
- TaskSource protocol
- HttpTaskSource: JSON-over-HTTP provider client (httpx)
- InMemoryTaskSource: local provider for development and tests
- SnapshotReader: timeout + cached/empty fallback around any TaskSource
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Any, Iterable, Protocol, runtime_checkable

import httpx

from ..errors import NotFound, UpstreamUnavailable
from ..logging import get_logger

logger = get_logger(__name__)

PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}


def normalize_priority(value: Any) -> str:
    """
    Map a provider priority onto high/medium/low.

    Numeric priorities follow the iCalendar scale: 1-3 high, 4-6 medium,
    7-9 low, 0 (undefined) medium.
    """
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in PRIORITY_ORDER:
            return lowered
        if not lowered.isdigit():
            return "medium"
        value = int(lowered)
    if isinstance(value, (int, float)):
        value = int(value)
        if 1 <= value <= 3:
            return "high"
        if 7 <= value <= 9:
            return "low"
    return "medium"


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


@dataclass(frozen=True)
class Task:
    """One to-do item as seen by the engine."""

    id: str
    title: str
    priority: str = "medium"
    completed: bool = False
    completed_at: datetime | None = None
    due_date: date | None = None
    list_id: str | None = None
    category: str | None = None

    @property
    def bucket(self) -> str:
        """Category used for diversity checks; falls back to the list."""
        return self.category or self.list_id or "uncategorized"

    @classmethod
    def from_dict(cls, data: dict[str, Any], list_id: str | None = None) -> "Task":
        completed = bool(data.get("completed", False))
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or data.get("summary") or ""),
            priority=normalize_priority(data.get("priority")),
            completed=completed,
            completed_at=_parse_datetime(data.get("completed_at") or data.get("completed_date")),
            due_date=_parse_date(data.get("due_date") or data.get("due")),
            list_id=str(data.get("list_id") or list_id) if (data.get("list_id") or list_id) else None,
            category=data.get("category"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "priority": self.priority,
            "completed": self.completed,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "list_id": self.list_id,
            "category": self.category,
        }


@dataclass(frozen=True)
class TaskSnapshot:
    """Point-in-time read of a user's tasks."""

    tasks: tuple[Task, ...] = ()
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    degraded: bool = False  # built from cache/empty fallback, not a live read

    @classmethod
    def of(cls, tasks: Iterable[Task], **kwargs: Any) -> "TaskSnapshot":
        return cls(tasks=tuple(tasks), **kwargs)

    @property
    def open_tasks(self) -> list[Task]:
        """Incomplete tasks, most pressing first (priority, then due date)."""
        pending = [t for t in self.tasks if not t.completed]
        return sorted(
            pending,
            key=lambda t: (PRIORITY_ORDER.get(t.priority, 1), t.due_date or date.max, t.id),
        )

    @property
    def completed_tasks(self) -> list[Task]:
        return [t for t in self.tasks if t.completed]

    def get(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == str(task_id):
                return task
        return None

    def __len__(self) -> int:
        return len(self.tasks)


@runtime_checkable
class TaskSource(Protocol):
    """What the engine needs from the external to-do provider."""

    async def fetch_snapshot(self, user_id: str) -> TaskSnapshot:
        ...

    async def complete_task(self, user_id: str, task_id: str) -> Task:
        ...


class HttpTaskSource:
    """
    Client for a JSON task provider.

    Expected endpoints:
        GET  {base}/users/{user_id}/lists            -> [{"id", "name", "tasks": [...]}]
        POST {base}/users/{user_id}/tasks/{id}/complete -> task object
    Tasks inherit their list's name as category when they carry none.
    """

    def __init__(self, base_url: str, *, timeout: float = 3.0, client: httpx.AsyncClient | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def fetch_snapshot(self, user_id: str) -> TaskSnapshot:
        try:
            response = await self._client.get(f"{self.base_url}/users/{user_id}/lists")
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Task source unreachable: {e}") from e
        except ValueError as e:
            raise UpstreamUnavailable("Task source sent an unreadable response") from e

        tasks: list[Task] = []
        try:
            for task_list in payload:
                list_id = str(task_list.get("id")) if task_list.get("id") is not None else None
                for raw in task_list.get("tasks", []):
                    raw.setdefault("category", task_list.get("name"))
                    tasks.append(Task.from_dict(raw, list_id=list_id))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise UpstreamUnavailable("Task source sent an unreadable response") from e
        return TaskSnapshot.of(tasks)

    async def complete_task(self, user_id: str, task_id: str) -> Task:
        try:
            response = await self._client.post(f"{self.base_url}/users/{user_id}/tasks/{task_id}/complete")
            if response.status_code == 404:
                raise NotFound("task", task_id)
            response.raise_for_status()
            return Task.from_dict(response.json())
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Task source unreachable: {e}") from e
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise UpstreamUnavailable("Task source sent an unreadable response") from e

    async def aclose(self) -> None:
        await self._client.aclose()


class InMemoryTaskSource:
    """Task provider held in process memory, keyed by user."""

    def __init__(self, tasks: dict[str, list[Task]] | None = None) -> None:
        self._tasks: dict[str, dict[str, Task]] = {}
        for user_id, user_tasks in (tasks or {}).items():
            self.set_tasks(user_id, user_tasks)

    def set_tasks(self, user_id: str, tasks: Iterable[Task]) -> None:
        self._tasks[user_id] = {t.id: t for t in tasks}

    def add_task(self, user_id: str, task: Task) -> None:
        self._tasks.setdefault(user_id, {})[task.id] = task

    async def fetch_snapshot(self, user_id: str) -> TaskSnapshot:
        return TaskSnapshot.of(self._tasks.get(user_id, {}).values())

    async def complete_task(self, user_id: str, task_id: str) -> Task:
        user_tasks = self._tasks.get(user_id, {})
        task = user_tasks.get(str(task_id))
        if task is None:
            raise NotFound("task", task_id)
        if not task.completed:
            task = replace(task, completed=True, completed_at=datetime.now(timezone.utc))
            user_tasks[task.id] = task
        return task


class SnapshotReader:
    """
    Bounded-time snapshot reads with graceful degradation.

    A live read that fails or exceeds ``timeout`` falls back to the user's
    last good snapshot, or to an empty one; either way it is flagged
    ``degraded`` so callers can refuse to award progress on it.
    Only the cache_size most recently read users keep a cached snapshot.
    """

    def __init__(self, source: TaskSource, *, timeout: float = 3.0, cache_size: int = 1024) -> None:
        self.source = source
        self.timeout = timeout
        self.cache_size = max(1, cache_size)
        self._last_good: OrderedDict[str, TaskSnapshot] = OrderedDict()

    async def read(self, user_id: str) -> TaskSnapshot:
        try:
            snapshot = await asyncio.wait_for(self.source.fetch_snapshot(user_id), timeout=self.timeout)
        except (asyncio.TimeoutError, UpstreamUnavailable, httpx.HTTPError) as e:
            cached = self._last_good.get(user_id)
            logger.warning(
                "Task snapshot for %s unavailable (%s); using %s",
                user_id,
                e.__class__.__name__,
                "cached snapshot" if cached else "empty snapshot",
            )
            if cached is not None:
                return replace(cached, degraded=True)
            return TaskSnapshot(degraded=True)
        self._last_good[user_id] = snapshot
        self._last_good.move_to_end(user_id)
        while len(self._last_good) > self.cache_size:
            self._last_good.popitem(last=False)
        return snapshot

    async def complete_task(self, user_id: str, task_id: str) -> Task:
        try:
            return await asyncio.wait_for(self.source.complete_task(user_id, task_id), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise UpstreamUnavailable("Task source timed out") from e

    def forget(self, user_id: str) -> None:
        self._last_good.pop(user_id, None)
