# questmap/engine/adventure.py
"""
AdventureEngine - public adventure operations.

Coordinates the WorldCatalog, PathGenerator, ObjectiveEvaluator and
ProgressStore with the external task and XP services.

Node state is never stored. It is derived on every read:
- completed: the node is in the completed set
- unlocked: the start node, or any predecessor is completed
  (the boss additionally needs boss accessibility)
- locked: everything else

World state is stored and only moves forward:
    locked -> unlocked -> in_progress -> completed

A node completion is committed first and its XP credit is delivered after.
If the XP service is down the credit stays pending and is retried at the
start of the user's next completion request (or via `questmap credits retry`).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Any
from zoneinfo import ZoneInfo

from .. import config
from ..errors import InvalidArgument, NotAccessible, NotFound, ObjectiveUnmet, UpstreamUnavailable
from ..logging import get_logger, progress_audit
from ..models import UserWorldProgress
from .catalog import World, WorldCatalog
from .objectives import NodeEvaluation, ObjectiveEvaluator, UserStats
from .path_generator import GeneratedPath, Node, NodeType, PathGenerator
from .progress import ProgressStore, as_utc
from .rewards import XpResult, XpService, award_with_timeout
from .tasks import SnapshotReader, TaskSource

logger = get_logger(__name__)

LOCKED = "locked"
UNLOCKED = "unlocked"
COMPLETED = "completed"


@dataclass
class CompletionResult:
    world_number: int
    position_key: str
    node_type: str
    node_name: str
    xp_earned: int
    already_completed: bool
    credit_pending: bool
    world_completed: bool = False
    next_world_unlocked: bool = False
    next_world_number: int | None = None
    xp: XpResult | None = None
    progress: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = {
            "world_number": self.world_number,
            "position_key": self.position_key,
            "node_type": self.node_type,
            "node_name": self.node_name,
            "xp_earned": self.xp_earned,
            "already_completed": self.already_completed,
            "credit_pending": self.credit_pending,
            "world_completed": self.world_completed,
            "next_world_unlocked": self.next_world_unlocked,
            "next_world_number": self.next_world_number,
            "progress": self.progress,
        }
        if self.xp is not None:
            data["level"] = self.xp.level
            data["rank"] = self.xp.rank
        return data


@dataclass
class NodeCheck:
    """Objective progress for one node, plus the completion it triggered (if any)."""

    world_number: int
    position_key: str
    evaluation: NodeEvaluation | None
    completion: CompletionResult | None = None

    @property
    def completed(self) -> bool:
        return self.completion is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "world_number": self.world_number,
            "position_key": self.position_key,
            "completed": self.completed,
            "evaluation": self.evaluation.to_dict() if self.evaluation else None,
            "completion": self.completion.to_dict() if self.completion else None,
        }


def node_states(path: GeneratedPath, completed: set[str] | dict[str, Any], boss_accessible: bool) -> dict[str, str]:
    states = {}
    for node in path.nodes:
        if node.position_key in completed:
            states[node.position_key] = COMPLETED
            continue
        reachable = node.position_key == path.start_node.position_key or any(
            p.position_key in completed for p in path.predecessors(node.position_key)
        )
        if node.type is NodeType.BOSS and not boss_accessible:
            reachable = False
        states[node.position_key] = UNLOCKED if reachable else LOCKED
    return states


def boss_accessible(progress: UserWorldProgress, path: GeneratedPath) -> bool:
    total = progress.total_levels or path.total_levels
    return progress.mini_boss_defeated and progress.levels_completed >= total - 1


class AdventureEngine:
    """
    Usage:
        engine = AdventureEngine(catalog, store, task_source, xp_service)
        await engine.get_map(user_id)
        await engine.complete_level(user_id, 1, "level_1")
        await engine.complete_boss(user_id, 1)
    """

    def __init__(
        self,
        catalog: WorldCatalog,
        store: ProgressStore,
        tasks: TaskSource,
        xp: XpService,
        *,
        generator: PathGenerator | None = None,
        evaluator: ObjectiveEvaluator | None = None,
        upstream_timeout: float = config.UPSTREAM_TIMEOUT,
        timezone: str = config.TIMEZONE,
    ) -> None:
        self.catalog = catalog
        self.store = store
        self.xp = xp
        self.snapshots = SnapshotReader(tasks, timeout=upstream_timeout)
        self.generator = generator or PathGenerator(config.MAX_NODES)
        self.evaluator = evaluator or ObjectiveEvaluator()
        self.upstream_timeout = upstream_timeout
        self.default_tz = ZoneInfo(timezone)

    # ---------- Loading ----------

    async def _ensure_progress(self, user_id: str, world_number: int) -> UserWorldProgress:
        self.catalog.get_world(world_number)
        progress = await self.store.get_progress(user_id, world_number)
        if progress is None:
            status = UNLOCKED if await self.catalog.should_unlock(world_number, user_id, self.store) else LOCKED
            return await self.store.get_or_create_progress(user_id, world_number, status)
        if progress.world_status == LOCKED and await self.catalog.should_unlock(world_number, user_id, self.store):
            progress = await self.store.promote_world(user_id, world_number, UNLOCKED)
        return progress

    async def _ensure_path(self, user_id: str, world: World) -> GeneratedPath:
        path = await self.store.get_path(user_id, world.number)
        if path is not None:
            return path
        snapshot = await self.snapshots.read(user_id)
        generated = self.generator.generate(world, snapshot)
        return await self.store.save_path_if_absent(user_id, generated)

    async def _open_world(self, user_id: str, world_number: int) -> tuple[World, UserWorldProgress, GeneratedPath]:
        """World, progress and path for a world the user may enter. NotAccessible if locked."""
        world = self.catalog.get_world(world_number)
        progress = await self._ensure_progress(user_id, world_number)
        if progress.world_status == LOCKED:
            raise NotAccessible(
                f"World {world_number} is locked",
                details={"world_number": world_number, "requires": world_number - 1},
            )
        path = await self._ensure_path(user_id, world)
        if progress.total_levels != path.total_levels:
            progress = await self.store.get_progress(user_id, world_number)
        return world, progress, path

    async def current_world_number(self, user_id: str) -> int:
        rows = await self.store.list_progress(user_id)
        active = [r.world_number for r in rows if r.world_status in (UNLOCKED, "in_progress")]
        if active:
            return max(active)
        done = [r.world_number for r in rows if r.world_status == COMPLETED]
        if done:
            return max(done)
        return 1

    def _view(
        self,
        world: World,
        progress: UserWorldProgress,
        path: GeneratedPath,
        completed: dict[str, datetime],
    ) -> dict[str, Any]:
        accessible = boss_accessible(progress, path)
        states = node_states(path, completed, accessible)
        path_data = path.to_dict()
        for node in path_data["nodes"]:
            node["status"] = states[node["position_key"]]
        return {
            "world": world.to_dict(),
            "path": path_data,
            "progress": progress.to_dict(),
            "current_position": progress.current_position,
            "boss_accessible": accessible,
        }

    # ---------- Reads ----------

    async def get_map(self, user_id: str) -> dict[str, Any]:
        """Current world with its path and progress. Generates the path on first visit."""
        await self._ensure_progress(user_id, 1)
        world_number = await self.current_world_number(user_id)
        world, progress, path = await self._open_world(user_id, world_number)
        completed = await self.store.completed_nodes(user_id, world_number)
        view = self._view(world, progress, path, completed)
        view["current_world"] = world_number
        view["total_worlds"] = self.catalog.count
        return view

    async def get_world_path(self, user_id: str, world_number: int) -> dict[str, Any]:
        world, progress, path = await self._open_world(user_id, world_number)
        completed = await self.store.completed_nodes(user_id, world_number)
        return self._view(world, progress, path, completed)

    async def list_worlds(self, user_id: str) -> list[dict[str, Any]]:
        await self._ensure_progress(user_id, 1)
        rows = {r.world_number: r for r in await self.store.list_progress(user_id)}
        current = await self.current_world_number(user_id)
        worlds = []
        for world in self.catalog:
            row = rows.get(world.number)
            if row is not None:
                status = row.world_status
            else:
                previous = rows.get(world.number - 1)
                status = UNLOCKED if previous is not None and previous.world_status == COMPLETED else LOCKED
            data = world.to_dict()
            data.update(
                {
                    "status": status,
                    "is_current": world.number == current,
                    "levels_completed": row.levels_completed if row else 0,
                    "total_levels": row.total_levels if row else 0,
                    "total_xp_earned": row.total_xp_earned if row else 0,
                    "boss_defeated": row.boss_defeated if row else False,
                    "boss": world.boss.to_dict(),
                }
            )
            worlds.append(data)
        return worlds

    async def get_boss_challenge(self, user_id: str, world_number: int) -> dict[str, Any]:
        world = self.catalog.get_world(world_number)
        progress = await self._ensure_progress(user_id, world_number)
        data = {
            "world_number": world_number,
            "world_name": world.display_name,
            "boss": world.boss.to_dict(),
            "accessible": False,
            "completed": progress.boss_defeated,
            "levels_completed": progress.levels_completed,
            "total_levels": progress.total_levels,
            "mini_boss_defeated": progress.mini_boss_defeated,
            "node": None,
        }
        if progress.world_status == LOCKED:
            return data

        _, progress, path = await self._open_world(user_id, world_number)
        completed = await self.store.completed_nodes(user_id, world_number)
        accessible = boss_accessible(progress, path)
        boss = path.boss_node
        node = boss.to_dict()
        node["status"] = node_states(path, completed, accessible)[boss.position_key]
        data.update(
            {
                "accessible": accessible,
                "completed": boss.position_key in completed,
                "levels_completed": progress.levels_completed,
                "total_levels": path.total_levels,
                "node": node,
            }
        )
        return data

    async def get_progress(self, user_id: str) -> dict[str, Any]:
        await self._ensure_progress(user_id, 1)
        rows = {r.world_number: r for r in await self.store.list_progress(user_id)}
        worlds = []
        for world in self.catalog:
            row = rows.get(world.number)
            entry = row.to_dict() if row else {"world_number": world.number, "world_status": LOCKED}
            entry["world_name"] = world.display_name
            worlds.append(entry)

        completed_worlds = sum(1 for r in rows.values() if r.world_status == COMPLETED)
        victories = await self.store.boss_victories(user_id)
        return {
            "current_world": await self.current_world_number(user_id),
            "worlds": worlds,
            "summary": {
                "total_worlds": self.catalog.count,
                "unlocked_worlds": sum(1 for r in rows.values() if r.world_status != LOCKED),
                "completed_worlds": completed_worlds,
                "total_levels_completed": sum(r.levels_completed for r in rows.values()),
                "total_bosses_defeated": sum(1 for r in rows.values() if r.boss_defeated),
                "total_xp_from_adventure": sum(r.total_xp_earned for r in rows.values()),
                "completion_percentage": round(completed_worlds / self.catalog.count * 100, 1),
            },
            "boss_victories": [
                {
                    "world_number": v.world_number,
                    "boss_name": v.boss_name,
                    "xp_earned": v.xp_earned,
                    "completed_at": as_utc(v.completed_at).isoformat(),
                }
                for v in victories
            ],
        }

    # ---------- Movement ----------

    async def move_to_node(self, user_id: str, node_id: str) -> dict[str, Any]:
        if not node_id:
            raise InvalidArgument("node_id is required")
        world_number = await self.current_world_number(user_id)
        world, progress, path = await self._open_world(user_id, world_number)
        node = path.get(node_id)
        if node is None:
            raise NotFound("node", node_id)
        completed = await self.store.completed_nodes(user_id, world_number)
        status = node_states(path, completed, boss_accessible(progress, path))[node.position_key]
        if status == LOCKED:
            raise NotAccessible(f"{node.name} is locked", details={"position_key": node.position_key})
        progress = await self.store.set_position(user_id, world_number, node.position_key)
        return {
            "world_number": world_number,
            "current_position": progress.current_position,
            "world_status": progress.world_status,
            "node": {**node.to_dict(), "status": status},
        }

    # ---------- Completion ----------

    def _stats(self, tz: tzinfo | None, progress: UserWorldProgress, path: GeneratedPath, node: Node,
               completed: dict[str, datetime]) -> UserStats:
        predecessor_times = [completed[p.position_key] for p in path.predecessors(node.position_key)
                             if p.position_key in completed]
        started = max(predecessor_times) if predecessor_times else as_utc(progress.started_at)
        return UserStats.now(tz or self.default_tz, node_started_at=started)

    async def check_node_completion(
        self, user_id: str, world_number: int, position_key: str, *, tz: tzinfo | None = None
    ) -> NodeCheck:
        """
        Evaluate a node against a fresh snapshot and complete it if every
        objective holds. Unmet objectives are a normal result, not an error.
        """
        world, progress, path = await self._open_world(user_id, world_number)
        node = path.get(position_key)
        if node is None:
            raise NotFound("node", position_key)
        completed = await self.store.completed_nodes(user_id, world_number)
        if position_key in completed:
            result = await self.complete_node(user_id, world_number, position_key)
            return NodeCheck(world_number, position_key, None, result)

        status = node_states(path, completed, boss_accessible(progress, path))[position_key]
        if status == LOCKED:
            raise NotAccessible(f"{node.name} is locked", details={"position_key": position_key})

        snapshot = await self.snapshots.read(user_id)
        evaluation = self.evaluator.evaluate_all(
            node.objectives, snapshot, self._stats(tz, progress, path, node, completed)
        )
        if snapshot.degraded and not snapshot.tasks:
            logger.info("Task data unavailable for %s; not completing %s", user_id, position_key)
            return NodeCheck(world_number, position_key, evaluation)
        if not evaluation.satisfied:
            return NodeCheck(world_number, position_key, evaluation)
        result = await self.complete_node(user_id, world_number, position_key)
        return NodeCheck(world_number, position_key, evaluation, result)

    async def complete_level(
        self, user_id: str, world_number: int, position_key: str, *, tz: tzinfo | None = None
    ) -> NodeCheck:
        """check_node_completion for callers that want unmet objectives as ObjectiveUnmet."""
        if not position_key:
            raise InvalidArgument("node id is required")
        await self.retry_pending_credits(user_id, stop_on_failure=True)
        check = await self.check_node_completion(user_id, world_number, position_key, tz=tz)
        if not check.completed:
            raise ObjectiveUnmet(check.evaluation)
        return check

    async def complete_node(self, user_id: str, world_number: int, position_key: str) -> CompletionResult:
        """
        Record a completion and credit its XP. Callers check objectives first.

        Completing a node twice is a successful no-op: no counters move and no
        second credit is created.
        """
        world = self.catalog.get_world(world_number)
        path = await self._ensure_path(user_id, world)
        node = path.get(position_key)
        if node is None:
            raise NotFound("node", position_key)

        next_world = None if self.catalog.is_final(world_number) else world_number + 1
        reason = f"Adventure: {node.name} (world {world_number}, {position_key})"
        outcome = await self.store.record_completion(
            user_id,
            world_number,
            node,
            reason=reason,
            next_world=next_world,
            boss_name=world.boss.name if node.type is NodeType.BOSS else None,
        )

        if outcome.already_completed:
            credit = await self.store.get_credit(outcome.completion_key)
            next_unlocked = False
            if node.type is NodeType.BOSS and next_world is not None:
                following = await self.store.get_progress(user_id, next_world)
                next_unlocked = following is not None and following.world_status != LOCKED
            return CompletionResult(
                world_number=world_number,
                position_key=position_key,
                node_type=node.type.value,
                node_name=node.name,
                xp_earned=0,
                already_completed=True,
                credit_pending=credit is not None and credit.status == "pending",
                world_completed=node.type is NodeType.BOSS and outcome.world_completed,
                next_world_unlocked=next_unlocked,
                next_world_number=next_world if next_unlocked else None,
                progress=outcome.progress.to_dict() if outcome.progress else {},
            )

        progress_audit.node_completed(user_id, world_number, position_key, node.type.value, node.reward_xp)
        if node.type is NodeType.BOSS:
            progress_audit.boss_defeated(user_id, world_number, world.boss.name, node.reward_xp)
        if outcome.next_world_unlocked:
            progress_audit.world_unlocked(user_id, outcome.next_world_number)

        xp_result = await self._deliver_credit(
            user_id, world_number, outcome.completion_key, node.reward_xp, reason
        )
        return CompletionResult(
            world_number=world_number,
            position_key=position_key,
            node_type=node.type.value,
            node_name=node.name,
            xp_earned=node.reward_xp,
            already_completed=False,
            credit_pending=xp_result is None,
            world_completed=outcome.world_completed,
            next_world_unlocked=outcome.next_world_unlocked,
            next_world_number=outcome.next_world_number,
            xp=xp_result,
            progress=outcome.progress.to_dict(),
        )

    async def complete_boss(self, user_id: str, world_number: int, *, tz: tzinfo | None = None) -> dict[str, Any]:
        await self.retry_pending_credits(user_id, stop_on_failure=True)
        world, progress, path = await self._open_world(user_id, world_number)
        boss = path.boss_node
        completed = await self.store.completed_nodes(user_id, world_number)

        if boss.position_key not in completed:
            if not boss_accessible(progress, path):
                raise NotAccessible(
                    f"{world.boss.name} is not accessible yet",
                    details={
                        "levels_completed": progress.levels_completed,
                        "total_levels": path.total_levels,
                        "mini_boss_defeated": progress.mini_boss_defeated,
                    },
                )
            snapshot = await self.snapshots.read(user_id)
            evaluation = self.evaluator.evaluate_all(
                boss.objectives, snapshot, self._stats(tz, progress, path, boss, completed)
            )
            if not evaluation.satisfied or (snapshot.degraded and not snapshot.tasks):
                raise ObjectiveUnmet(evaluation, "Boss challenge not completed")

        result = await self.complete_node(user_id, world_number, boss.position_key)
        data = result.to_dict()
        data.update(
            {
                "boss_defeated": True,
                "boss_name": world.boss.name,
                "boss_icon": world.boss.icon,
            }
        )
        return data

    # ---------- Tasks ----------

    async def complete_task(self, user_id: str, task_id: str, *, tz: tzinfo | None = None) -> dict[str, Any]:
        """Mark a task done upstream, then re-check the user's current node."""
        if not task_id:
            raise InvalidArgument("task_id is required")
        await self.retry_pending_credits(user_id, stop_on_failure=True)
        task = await self.snapshots.complete_task(user_id, task_id)

        await self._ensure_progress(user_id, 1)
        world_number = await self.current_world_number(user_id)
        _, progress, path = await self._open_world(user_id, world_number)
        check = None
        if path.get(progress.current_position) is not None:
            try:
                check = await self.check_node_completion(user_id, world_number, progress.current_position, tz=tz)
            except NotAccessible:
                logger.debug("Current node %s of %s is locked; skipping check", progress.current_position, user_id)
        return {
            "task": task.to_dict(),
            "world_number": world_number,
            "node_check": check.to_dict() if check else None,
        }

    # ---------- XP credits ----------

    async def _deliver_credit(
        self, user_id: str, world_number: int, key: str, amount: int, reason: str
    ) -> XpResult | None:
        try:
            result = await award_with_timeout(self.xp, user_id, amount, reason, key, timeout=self.upstream_timeout)
        except UpstreamUnavailable as e:
            await self.store.mark_credit(key, success=False, error=e.message)
            progress_audit.credit_deferred(user_id, world_number, key, e.message)
            return None
        await self.store.mark_credit(key, success=True)
        progress_audit.credit_applied(user_id, world_number, key, amount)
        return result

    async def retry_pending_credits(
        self, user_id: str | None = None, *, stop_on_failure: bool = False
    ) -> dict[str, int]:
        """
        Re-deliver every pending XP credit (for one user, or everyone).

        With stop_on_failure the first failed delivery ends the run, so a
        request path waits on a down XP service at most once.
        """
        pending = await self.store.pending_credits(user_id)
        attempted = credited = 0
        for credit in pending:
            attempted += 1
            result = await self._deliver_credit(
                credit.user_id, credit.world_number, credit.completion_key, credit.amount, credit.reason
            )
            if result is not None:
                credited += 1
            elif stop_on_failure:
                break
        if pending:
            logger.info("Retried %d of %d pending credits, %d delivered", attempted, len(pending), credited)
        return {"attempted": attempted, "credited": credited, "pending": len(pending) - credited}

    # ---------- Admin ----------

    async def reset_user(self, user_id: str) -> int:
        """Forget everything about one user's adventure. Worlds start over at 1."""
        self.snapshots.forget(user_id)
        return await self.store.reset_user(user_id)

    async def health(self) -> dict[str, Any]:
        return {"database": await self.store.ping(), "worlds": self.catalog.count}
