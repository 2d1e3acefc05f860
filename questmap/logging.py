# questmap/logging.py
"""
Logging setup and the progress audit trail.

Provides:
- configure_logging(): one-time root handler setup (called from the app lifespan / CLI)
- get_logger(): module logger helper
- progress_audit: structured audit lines for every state-changing adventure event
"""

import logging
from typing import Any

LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"

_configured = False


def configure_logging(level: str | int = "INFO") -> None:
    """Install a stream handler on the root logger. Safe to call more than once."""
    global _configured
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    root = logging.getLogger()
    root.setLevel(level)
    if _configured:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Get a module logger."""
    return logging.getLogger(name)


class ProgressAuditLogger:
    """
    Writes one line per adventure state change to the ``questmap.audit`` logger.

    Every line carries the user and world so the trail can be grepped per user;
    the same values are attached as ``extra`` for structured handlers.
    """

    def __init__(self, name: str = "questmap.audit") -> None:
        self._logger = logging.getLogger(name)

    def _emit(self, event: str, user_id: str, world_number: int, **fields: Any) -> None:
        detail = " ".join(f"{k}={v}" for k, v in fields.items())
        self._logger.info(
            "%s user=%s world=%d %s",
            event,
            user_id,
            world_number,
            detail,
            extra={"audit_event": event, "user_id": user_id, "world_number": world_number, **fields},
        )

    def node_completed(self, user_id: str, world_number: int, position_key: str, node_type: str, reward_xp: int) -> None:
        self._emit("node_completed", user_id, world_number, node=position_key, type=node_type, xp=reward_xp)

    def boss_defeated(self, user_id: str, world_number: int, boss_name: str, xp: int) -> None:
        self._emit("boss_defeated", user_id, world_number, boss=repr(boss_name), xp=xp)

    def world_unlocked(self, user_id: str, world_number: int) -> None:
        self._emit("world_unlocked", user_id, world_number)

    def credit_deferred(self, user_id: str, world_number: int, completion_key: str, reason: str) -> None:
        self._emit("credit_deferred", user_id, world_number, key=completion_key, reason=repr(reason))

    def credit_applied(self, user_id: str, world_number: int, completion_key: str, amount: int) -> None:
        self._emit("credit_applied", user_id, world_number, key=completion_key, xp=amount)


progress_audit = ProgressAuditLogger()
