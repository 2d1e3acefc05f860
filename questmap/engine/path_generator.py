# questmap/engine/path_generator.py
"""
PathGenerator - builds one user's node path through one world.

Layout:
- node 1 is the start (regular), the last node is the boss, the node before
  it is the mini-boss, everything in between is regular
- nodes are chained linearly: level_1 -> level_2 -> ... -> boss
- the chain grows with the number of open tasks, capped at max_nodes

The graph shape depends only on the world and on how many tasks are open;
which tasks get bound to regular nodes depends on the snapshot contents.
Callers persist the result: a path is never regenerated once stored.

If the scaled generator fails for any reason the fixed four-node layout is
returned instead, so a world is always playable.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..errors import GenerationFailure
from ..logging import get_logger
from .catalog import World
from .objectives import Objective, ObjectiveType
from .tasks import Task, TaskSnapshot

logger = get_logger(__name__)

MIN_NODES = 4
DEFAULT_MAX_NODES = 15

# Base XP per node type before position and difficulty scaling
BASE_REWARD_XP = {"regular": 50, "mini_boss": 150, "boss": 250}
REWARD_XP_STEP = 25

MINI_BOSS_BASE_COUNT = 3
BOSS_BASE_COUNT = 5
BOSS_DIVERSITY_CATEGORIES = 2

# Keywords used to prefer on-theme tasks for regular nodes
THEME_KEYWORDS: dict[str, tuple[str, ...]] = {
    "personal": ("personal", "home", "family"),
    "work": ("work", "meeting", "report", "client"),
    "fitness": ("gym", "exercise", "workout", "run", "health"),
    "creative": ("write", "draw", "design", "music", "idea"),
    "routine": ("daily", "routine", "habit", "clean"),
    "social": ("call", "meet", "friend", "email", "social"),
    "urgent": ("urgent", "asap", "deadline"),
}

NODE_ICONS = {"start": "🏠", "regular": "⭐", "mini_boss": "🏯", "boss": "🏰"}


class NodeType(Enum):
    REGULAR = "regular"
    MINI_BOSS = "mini_boss"
    BOSS = "boss"


@dataclass(frozen=True)
class Node:
    position_key: str
    position: int
    type: NodeType
    name: str
    description: str
    reward_xp: int
    connections: tuple[str, ...] = ()
    objectives: tuple[Objective, ...] = ()
    icon: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "position_key": self.position_key,
            "position": self.position,
            "type": self.type.value,
            "name": self.name,
            "description": self.description,
            "reward_xp": self.reward_xp,
            "connections": list(self.connections),
            "objectives": [o.to_dict() for o in self.objectives],
            "icon": self.icon,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Node":
        return cls(
            position_key=data["position_key"],
            position=int(data["position"]),
            type=NodeType(data["type"]),
            name=data.get("name", ""),
            description=data.get("description", ""),
            reward_xp=int(data.get("reward_xp", 0)),
            connections=tuple(data.get("connections", [])),
            objectives=tuple(Objective.from_dict(o) for o in data.get("objectives", [])),
            icon=data.get("icon", ""),
        )


@dataclass(frozen=True)
class GeneratedPath:
    world_number: int
    nodes: tuple[Node, ...]
    generator: str = "scaled"
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def start_node(self) -> Node:
        return self.nodes[0]

    @property
    def boss_node(self) -> Node:
        return next(n for n in self.nodes if n.type is NodeType.BOSS)

    @property
    def mini_boss_node(self) -> Node | None:
        return next((n for n in self.nodes if n.type is NodeType.MINI_BOSS), None)

    @property
    def total_levels(self) -> int:
        return len(self.nodes)

    @property
    def mini_boss_position(self) -> int | None:
        mini = self.mini_boss_node
        return mini.position if mini else None

    def get(self, position_key: str) -> Node | None:
        for node in self.nodes:
            if node.position_key == position_key:
                return node
        return None

    def predecessors(self, position_key: str) -> list[Node]:
        return [n for n in self.nodes if position_key in n.connections]

    def to_dict(self) -> dict[str, Any]:
        return {
            "world_number": self.world_number,
            "generator": self.generator,
            "start_node": self.start_node.position_key,
            "total_levels": self.total_levels,
            "mini_boss_position": self.mini_boss_position,
            "nodes": [n.to_dict() for n in self.nodes],
        }


def node_key(position: int) -> str:
    return f"level_{position}"


def validate(path: GeneratedPath) -> None:
    """Check the structural invariants of a path. Raises GenerationFailure."""
    if len(path.nodes) < MIN_NODES:
        raise GenerationFailure(f"Path has {len(path.nodes)} nodes, need at least {MIN_NODES}")
    keys = [n.position_key for n in path.nodes]
    if len(set(keys)) != len(keys):
        raise GenerationFailure("Duplicate node keys")
    bosses = [n for n in path.nodes if n.type is NodeType.BOSS]
    minis = [n for n in path.nodes if n.type is NodeType.MINI_BOSS]
    if len(bosses) != 1:
        raise GenerationFailure(f"Path must have exactly one boss, found {len(bosses)}")
    if len(minis) > 1:
        raise GenerationFailure(f"Path may have at most one mini-boss, found {len(minis)}")
    positions = {n.position_key: n.position for n in path.nodes}
    for node in path.nodes:
        if not node.objectives:
            raise GenerationFailure(f"Node {node.position_key} has no objectives")
        for target in node.connections:
            if target not in positions:
                raise GenerationFailure(f"Node {node.position_key} connects to unknown {target}")
            # Edges only move forward, which keeps the graph acyclic
            if positions[target] <= node.position:
                raise GenerationFailure(f"Edge {node.position_key} -> {target} does not move forward")
    terminals = [n for n in path.nodes if not n.connections]
    if terminals != bosses:
        raise GenerationFailure("The boss must be the only terminal node")

    reachable = {path.start_node.position_key}
    frontier = [path.start_node]
    while frontier:
        node = frontier.pop()
        for target in node.connections:
            if target not in reachable:
                reachable.add(target)
                frontier.append(path.get(target))
    if reachable != set(keys):
        raise GenerationFailure(f"Unreachable nodes: {sorted(set(keys) - reachable)}")


class PathGenerator:
    """
    Usage:
        generator = PathGenerator(max_nodes=15)
        path = generator.generate(world, snapshot)
    """

    def __init__(self, max_nodes: int = DEFAULT_MAX_NODES) -> None:
        self.max_nodes = max(MIN_NODES, max_nodes)

    def node_count(self, open_tasks: int) -> int:
        return min(self.max_nodes, MIN_NODES + open_tasks // 2)

    def generate(self, world: World, snapshot: TaskSnapshot) -> GeneratedPath:
        try:
            path = self._scaled(world, snapshot)
            validate(path)
            return path
        except Exception:
            logger.exception("Path generation failed for world %d; using fallback layout", world.number)
            return self.fallback(world)

    # ---------- Scaled layout ----------

    def _scaled(self, world: World, snapshot: TaskSnapshot) -> GeneratedPath:
        open_tasks = snapshot.open_tasks
        total = self.node_count(len(open_tasks))
        pool = self._themed_pool(open_tasks, world.task_focus)
        regular_count = total - 2

        nodes = []
        for index in range(total):
            position = index + 1
            connections = (node_key(position + 1),) if position < total else ()
            if position == total:
                node_type = NodeType.BOSS
                objectives = self._boss_objectives(world, len(open_tasks))
            elif position == total - 1:
                node_type = NodeType.MINI_BOSS
                objectives = self._mini_boss_objectives(world, len(open_tasks))
            else:
                node_type = NodeType.REGULAR
                objectives = self._regular_objectives(pool, index, regular_count)
            nodes.append(self._node(world, position, total, node_type, objectives, connections))
        return GeneratedPath(world_number=world.number, nodes=tuple(nodes), generator="scaled")

    @staticmethod
    def _themed_pool(open_tasks: list[Task], focus: str) -> list[Task]:
        keywords = THEME_KEYWORDS.get(focus)
        if not keywords:
            return open_tasks
        themed = [
            t for t in open_tasks
            if any(k in t.title.lower() or k in (t.category or "").lower() for k in keywords)
        ]
        # Themed tasks first, the rest after, so every open task stays reachable
        return themed + [t for t in open_tasks if t not in themed]

    @staticmethod
    def _regular_objectives(pool: list[Task], index: int, regular_count: int) -> tuple[Objective, ...]:
        if not pool:
            return (Objective(ObjectiveType.DAILY_QUANTITY, {"count": 1}, "Complete 1 task today"),)
        picks = [pool[index % len(pool)]]
        if len(pool) >= 2 * regular_count:
            picks.append(pool[(index + regular_count) % len(pool)])
        return tuple(
            Objective(
                ObjectiveType.COMPLETE_TASK,
                {"task_id": t.id, "task_title": t.title},
                f"Complete: {t.title}",
            )
            for t in picks
        )

    @staticmethod
    def _mini_boss_objectives(world: World, open_count: int) -> tuple[Objective, ...]:
        if open_count >= MINI_BOSS_BASE_COUNT:
            count = max(MINI_BOSS_BASE_COUNT, round(MINI_BOSS_BASE_COUNT * world.difficulty_modifier))
            return (
                Objective(
                    ObjectiveType.DAILY_QUANTITY,
                    {"count": count},
                    f"Complete {count} tasks today to defeat the guardian",
                ),
            )
        return (Objective(ObjectiveType.PRIORITY_CLEAR, {"priority": "high"}, "Complete all high-priority tasks"),)

    @staticmethod
    def boss_count(world: World) -> int:
        """Tasks to finish today for the boss: the world's baseline scaled by difficulty."""
        baseline = int(world.boss.objective.target.get("count", BOSS_BASE_COUNT))
        return max(1, round(baseline * world.difficulty_modifier))

    def _boss_objectives(self, world: World, open_count: int) -> tuple[Objective, ...]:
        count = self.boss_count(world)
        quantity = Objective(
            ObjectiveType.DAILY_QUANTITY,
            {"count": count},
            f"Complete {count} tasks today to defeat {world.boss.name}",
        )
        if open_count >= BOSS_BASE_COUNT:
            return (
                quantity,
                Objective(
                    ObjectiveType.CATEGORY_DIVERSITY,
                    {"category_count": BOSS_DIVERSITY_CATEGORIES},
                    f"Complete tasks from {BOSS_DIVERSITY_CATEGORIES} different lists today",
                ),
            )
        return (
            quantity,
            Objective(
                ObjectiveType.COMPLETE_ALL_AVAILABLE,
                {"count": open_count},
                "Complete all available tasks to claim victory",
            ),
        )

    # ---------- Fixed fallback layout ----------

    def fallback(self, world: World) -> GeneratedPath:
        """Four nodes, quantity objectives only. Needs nothing but the world definition."""
        mini_count = max(MINI_BOSS_BASE_COUNT, round(MINI_BOSS_BASE_COUNT * world.difficulty_modifier))
        boss_count = self.boss_count(world)
        plan = [
            (NodeType.REGULAR, 1, "Complete 1 task today"),
            (NodeType.REGULAR, 1, "Complete 1 task today"),
            (NodeType.MINI_BOSS, mini_count, f"Complete {mini_count} tasks today to defeat the guardian"),
            (NodeType.BOSS, boss_count, f"Complete {boss_count} tasks today to defeat {world.boss.name}"),
        ]
        nodes = []
        for index, (node_type, count, text) in enumerate(plan):
            position = index + 1
            connections = (node_key(position + 1),) if position < MIN_NODES else ()
            objectives = (Objective(ObjectiveType.DAILY_QUANTITY, {"count": count}, text),)
            nodes.append(self._node(world, position, MIN_NODES, node_type, objectives, connections))
        return GeneratedPath(world_number=world.number, nodes=tuple(nodes), generator="fallback")

    # ---------- Shared ----------

    @staticmethod
    def reward_xp(node_type: NodeType, index: int, world: World) -> int:
        xp = round((BASE_REWARD_XP[node_type.value] + REWARD_XP_STEP * index) * world.difficulty_modifier)
        if node_type is NodeType.BOSS:
            xp = max(xp, world.boss.reward_xp)
        return xp

    def _node(
        self,
        world: World,
        position: int,
        total: int,
        node_type: NodeType,
        objectives: tuple[Objective, ...],
        connections: tuple[str, ...],
    ) -> Node:
        if node_type is NodeType.BOSS:
            name, description, icon = world.boss.name, world.boss.description, world.boss.icon or NODE_ICONS["boss"]
        elif node_type is NodeType.MINI_BOSS:
            name = f"{world.display_name} Guardian"
            description = "Face a challenging mini-boss"
            icon = NODE_ICONS["mini_boss"]
        elif position == 1:
            name = f"Enter {world.display_name}"
            description = "Begin your adventure here"
            icon = NODE_ICONS["start"]
        else:
            name = f"{world.theme.title()} Challenge {position - 1}"
            description = "Complete tasks to progress"
            icon = NODE_ICONS["regular"]
        return Node(
            position_key=node_key(position),
            position=position,
            type=node_type,
            name=name,
            description=description,
            reward_xp=self.reward_xp(node_type, position - 1, world),
            connections=connections,
            objectives=objectives,
            icon=icon,
        )
