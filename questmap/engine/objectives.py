# questmap/engine/objectives.py
"""
Objective definitions and their evaluation.

Objectives are stateless: a node never remembers that one of its objectives
was "done". Satisfaction is recomputed from a TaskSnapshot every time, so a
node's state always reflects what the task provider says right now.

Day boundary: "completed today" means the task's completion timestamp falls
on the user's local calendar day (UserStats.today in UserStats.tz).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone, tzinfo
from enum import Enum
from typing import Any, Callable, Iterable

from ..errors import InvalidArgument
from .tasks import Task, TaskSnapshot


class ObjectiveType(Enum):
    COMPLETE_TASK = "complete_task"
    DAILY_QUANTITY = "daily_quantity"
    PRIORITY_CLEAR = "priority_clear"
    CATEGORY_DIVERSITY = "category_diversity"
    COMPLETE_ALL_AVAILABLE = "complete_all_available"


@dataclass(frozen=True)
class Objective:
    type: ObjectiveType
    target: dict[str, Any] = field(default_factory=dict)
    description: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Objective":
        try:
            objective_type = ObjectiveType(data["type"])
        except (KeyError, ValueError) as e:
            raise InvalidArgument(f"Unknown objective type: {data.get('type')!r}") from e
        target = dict(data.get("target") or data.get("data") or {})
        return cls(type=objective_type, target=target, description=data.get("description", ""))

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "target": dict(self.target), "description": self.description}


@dataclass(frozen=True)
class UserStats:
    """Per-request evaluation context for one user."""

    today: date
    tz: tzinfo = timezone.utc
    node_started_at: datetime | None = None

    @classmethod
    def now(cls, tz: tzinfo = timezone.utc, node_started_at: datetime | None = None) -> "UserStats":
        return cls(today=datetime.now(tz).date(), tz=tz, node_started_at=node_started_at)


@dataclass(frozen=True)
class ObjectiveResult:
    objective: Objective
    satisfied: bool
    progress_current: int
    progress_required: int

    @property
    def fraction(self) -> float:
        if self.progress_required <= 0:
            return 1.0 if self.satisfied else 0.0
        return min(1.0, self.progress_current / self.progress_required)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.objective.type.value,
            "description": self.objective.description,
            "satisfied": self.satisfied,
            "progress": self.progress_current,
            "required": self.progress_required,
            "fraction": round(self.fraction, 3),
        }


@dataclass(frozen=True)
class NodeEvaluation:
    """Conjunction of a node's objective results."""

    results: tuple[ObjectiveResult, ...]
    snapshot_degraded: bool = False

    @property
    def satisfied(self) -> bool:
        return all(r.satisfied for r in self.results)

    def to_dict(self) -> dict[str, Any]:
        return {
            "satisfied": self.satisfied,
            "snapshot_degraded": self.snapshot_degraded,
            "objectives": [r.to_dict() for r in self.results],
        }


def completed_today(tasks: Iterable[Task], stats: UserStats) -> list[Task]:
    """Completed tasks whose completion falls on the user's local calendar day."""
    found = []
    for task in tasks:
        if not task.completed or task.completed_at is None:
            continue
        if task.completed_at.astimezone(stats.tz).date() == stats.today:
            found.append(task)
    return found


class ObjectiveEvaluator:
    """
    Evaluates objectives against a task snapshot.

    Usage:
        evaluator = ObjectiveEvaluator()
        result = evaluator.evaluate(objective, snapshot, UserStats.now(tz))
        node_result = evaluator.evaluate_all(node.objectives, snapshot, stats)
    """

    def __init__(self) -> None:
        self._handlers: dict[ObjectiveType, Callable[[Objective, TaskSnapshot, UserStats], ObjectiveResult]] = {
            ObjectiveType.COMPLETE_TASK: self._complete_task,
            ObjectiveType.DAILY_QUANTITY: self._daily_quantity,
            ObjectiveType.PRIORITY_CLEAR: self._priority_clear,
            ObjectiveType.CATEGORY_DIVERSITY: self._category_diversity,
            ObjectiveType.COMPLETE_ALL_AVAILABLE: self._complete_all_available,
        }

    def evaluate(self, objective: Objective, snapshot: TaskSnapshot, stats: UserStats) -> ObjectiveResult:
        handler = self._handlers.get(objective.type)
        if handler is None:
            raise InvalidArgument(f"Unsupported objective type: {objective.type}")
        return handler(objective, snapshot, stats)

    def evaluate_all(
        self, objectives: Iterable[Objective], snapshot: TaskSnapshot, stats: UserStats
    ) -> NodeEvaluation:
        results = tuple(self.evaluate(o, snapshot, stats) for o in objectives)
        return NodeEvaluation(results=results, snapshot_degraded=snapshot.degraded)

    # ---------- Handlers ----------

    @staticmethod
    def _count(objective: Objective, key: str, default: int) -> int:
        try:
            return max(0, int(objective.target.get(key, default)))
        except (TypeError, ValueError) as e:
            raise InvalidArgument(f"Objective {objective.type.value} has a non-numeric {key}") from e

    def _complete_task(self, objective: Objective, snapshot: TaskSnapshot, stats: UserStats) -> ObjectiveResult:
        task_id = objective.target.get("task_id")
        if task_id is not None:
            task = snapshot.get(str(task_id))
            done = task is not None and task.completed
        elif stats.node_started_at is not None:
            done = any(
                t.completed and t.completed_at is not None and t.completed_at >= stats.node_started_at
                for t in snapshot.tasks
            )
        else:
            done = bool(snapshot.completed_tasks)
        return ObjectiveResult(objective, done, 1 if done else 0, 1)

    def _daily_quantity(self, objective: Objective, snapshot: TaskSnapshot, stats: UserStats) -> ObjectiveResult:
        required = self._count(objective, "count", 1)
        done_today = len(completed_today(snapshot.tasks, stats))
        return ObjectiveResult(objective, done_today >= required, min(done_today, required), required)

    def _priority_clear(self, objective: Objective, snapshot: TaskSnapshot, stats: UserStats) -> ObjectiveResult:
        priority = str(objective.target.get("priority", "high")).lower()
        tier = [t for t in snapshot.tasks if t.priority == priority]
        remaining = sum(1 for t in tier if not t.completed)
        return ObjectiveResult(objective, remaining == 0, len(tier) - remaining, len(tier))

    def _category_diversity(self, objective: Objective, snapshot: TaskSnapshot, stats: UserStats) -> ObjectiveResult:
        required = self._count(objective, "category_count", 2)
        buckets = {t.bucket for t in completed_today(snapshot.tasks, stats)}
        return ObjectiveResult(objective, len(buckets) >= required, min(len(buckets), required), required)

    def _complete_all_available(self, objective: Objective, snapshot: TaskSnapshot, stats: UserStats) -> ObjectiveResult:
        total = len(snapshot.tasks)
        remaining = sum(1 for t in snapshot.tasks if not t.completed)
        return ObjectiveResult(objective, remaining == 0, total - remaining, total)
