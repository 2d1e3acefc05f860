# questmap/engine/rewards.py
"""
XP Service adapters.

The engine does not own the leveling curve. It asks an XP service to credit
an amount for a reason and forwards the node's completion key as the
idempotency key, so a credit replayed after a timeout is applied once.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import httpx

from ..errors import UpstreamUnavailable
from ..logging import get_logger

logger = get_logger(__name__)

# Simple level table used by the in-memory service
XP_PER_LEVEL = 1000
RANKS = [
    (0, "Novice"),
    (5, "Apprentice"),
    (10, "Adventurer"),
    (20, "Hero"),
    (35, "Champion"),
    (50, "Legend"),
]


def rank_for_level(level: int) -> str:
    rank = RANKS[0][1]
    for threshold, name in RANKS:
        if level >= threshold:
            rank = name
    return rank


@dataclass(frozen=True)
class XpResult:
    """What the XP service reports after a credit."""

    total_xp: int
    level: int
    rank: str
    duplicate: bool = False  # the idempotency key had already been applied

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "XpResult":
        return cls(
            total_xp=int(data.get("total_xp", data.get("experience", 0))),
            level=int(data.get("level", 1)),
            rank=str(data.get("rank", "")),
            duplicate=bool(data.get("duplicate", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"total_xp": self.total_xp, "level": self.level, "rank": self.rank}


@runtime_checkable
class XpService(Protocol):
    async def award_xp(self, user_id: str, amount: int, reason: str, idempotency_key: str) -> XpResult:
        ...


class HttpXpService:
    """
    Client for a JSON XP service.

    POST {base}/users/{user_id}/xp  {"amount", "reason", "idempotency_key"}
    The key is also sent as the Idempotency-Key header.
    """

    def __init__(self, base_url: str, *, timeout: float = 3.0, client: httpx.AsyncClient | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def award_xp(self, user_id: str, amount: int, reason: str, idempotency_key: str) -> XpResult:
        try:
            response = await self._client.post(
                f"{self.base_url}/users/{user_id}/xp",
                json={"amount": amount, "reason": reason, "idempotency_key": idempotency_key},
                headers={"Idempotency-Key": idempotency_key},
            )
            response.raise_for_status()
            return XpResult.from_dict(response.json())
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"XP service unreachable: {e}") from e

    async def aclose(self) -> None:
        await self._client.aclose()


class InMemoryXpService:
    """
    XP ledger held in process memory.

    Deduplicates on the idempotency key. ``credits`` records every applied
    (user_id, amount, reason, key) for inspection.
    """

    def __init__(self) -> None:
        self.totals: dict[str, int] = {}
        self.credits: list[tuple[str, int, str, str]] = []
        self._applied: set[str] = set()

    async def award_xp(self, user_id: str, amount: int, reason: str, idempotency_key: str) -> XpResult:
        duplicate = idempotency_key in self._applied
        if not duplicate:
            self._applied.add(idempotency_key)
            self.totals[user_id] = self.totals.get(user_id, 0) + amount
            self.credits.append((user_id, amount, reason, idempotency_key))
        total = self.totals.get(user_id, 0)
        level = total // XP_PER_LEVEL + 1
        return XpResult(total_xp=total, level=level, rank=rank_for_level(level), duplicate=duplicate)


async def award_with_timeout(
    service: XpService, user_id: str, amount: int, reason: str, idempotency_key: str, *, timeout: float
) -> XpResult:
    """Credit XP within ``timeout`` seconds; a timeout is reported as UpstreamUnavailable."""
    try:
        return await asyncio.wait_for(service.award_xp(user_id, amount, reason, idempotency_key), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise UpstreamUnavailable("XP service timed out") from e
