"""
Adventure engine components.

- catalog: static world/boss table
- objectives: objective specs and evaluation
- path_generator: per-user node graphs
- progress: persisted progress (the only mutable state)
- adventure: public operations
- tasks / rewards: adapters for the external task and XP services
"""

from .adventure import AdventureEngine
from .catalog import WorldCatalog
from .objectives import ObjectiveEvaluator
from .path_generator import PathGenerator
from .progress import ProgressStore

__all__ = ["AdventureEngine", "WorldCatalog", "ObjectiveEvaluator", "PathGenerator", "ProgressStore"]
