# questmap/engine/catalog.py
"""
WorldCatalog - the static table of adventure worlds.

Worlds are defined at deploy time in YAML (see world_data/worlds.yaml) and
never change at runtime. World order is the unlock order.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterator

import yaml

from ..errors import NotFound
from ..logging import get_logger
from .objectives import Objective

if TYPE_CHECKING:
    from .progress import ProgressStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class BossDefinition:
    name: str
    description: str
    objective: Objective
    reward_xp: int
    icon: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "icon": self.icon,
            "reward_xp": self.reward_xp,
            "objective": self.objective.to_dict(),
        }


@dataclass(frozen=True)
class World:
    number: int
    theme: str
    display_name: str
    description: str
    difficulty_modifier: float
    boss: BossDefinition
    task_focus: str = "mixed"
    icon: str = ""
    color_primary: str = ""
    color_secondary: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "world_number": self.number,
            "name": self.display_name,
            "theme": self.theme,
            "description": self.description,
            "difficulty_modifier": self.difficulty_modifier,
            "task_focus": self.task_focus,
            "icon": self.icon,
            "color_primary": self.color_primary,
            "color_secondary": self.color_secondary,
        }


def _world_from_dict(data: dict[str, Any]) -> World:
    boss = data["boss"]
    objective = Objective.from_dict(boss["objective"])
    if not objective.description:
        objective = Objective(objective.type, objective.target, boss.get("description", ""))
    modifier = float(data.get("difficulty_modifier", 1.0))
    if modifier < 1.0:
        raise ValueError(f"World {data['number']}: difficulty_modifier must be >= 1.0, got {modifier}")
    return World(
        number=int(data["number"]),
        theme=data["theme"],
        display_name=data["display_name"],
        description=data.get("description", ""),
        difficulty_modifier=modifier,
        task_focus=data.get("task_focus", data["theme"]),
        icon=data.get("icon", ""),
        color_primary=data.get("color_primary", ""),
        color_secondary=data.get("color_secondary", ""),
        boss=BossDefinition(
            name=boss["name"],
            description=boss.get("description", ""),
            objective=objective,
            reward_xp=int(boss.get("reward_xp", 0)),
            icon=boss.get("icon", ""),
        ),
    )


class WorldCatalog:
    """
    Read-only world table.

    Usage:
        catalog = WorldCatalog.from_yaml(config.WORLD_DATA)
        world = catalog.get_world(3)
        unlocked = await catalog.should_unlock(3, user_id, store)
    """

    def __init__(self, worlds: list[World]) -> None:
        if not worlds:
            raise ValueError("World catalog is empty")
        ordered = sorted(worlds, key=lambda w: w.number)
        expected = list(range(1, len(ordered) + 1))
        if [w.number for w in ordered] != expected:
            raise ValueError(f"World numbers must run 1..{len(ordered)} without gaps")
        self._worlds: dict[int, World] = {w.number: w for w in ordered}

    @classmethod
    def from_yaml(cls, path: str | Path) -> "WorldCatalog":
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        worlds = [_world_from_dict(entry) for entry in data.get("worlds", [])]
        logger.info("Loaded %d adventure worlds from %s", len(worlds), path)
        return cls(worlds)

    @property
    def count(self) -> int:
        return len(self._worlds)

    def __iter__(self) -> Iterator[World]:
        return iter(self._worlds.values())

    def __contains__(self, world_number: object) -> bool:
        return world_number in self._worlds

    def get_world(self, world_number: int) -> World:
        world = self._worlds.get(world_number)
        if world is None:
            raise NotFound("world", world_number)
        return world

    def get_boss_definition(self, world_number: int) -> BossDefinition:
        return self.get_world(world_number).boss

    def is_final(self, world_number: int) -> bool:
        return world_number == self.count

    async def should_unlock(self, world_number: int, user_id: str, store: "ProgressStore") -> bool:
        """World 1 is always open; world n opens once world n-1 is completed."""
        self.get_world(world_number)
        if world_number == 1:
            return True
        previous = await store.get_progress(user_id, world_number - 1)
        return previous is not None and previous.world_status == "completed"
