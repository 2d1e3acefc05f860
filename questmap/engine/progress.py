# questmap/engine/progress.py
"""
ProgressStore - persisted adventure state.

Owns every write the engine makes. Guarantees:
- at-most-once node completion: the NodeCompletion row is inserted in the
  same transaction as the counter updates; a conflicting insert rolls the
  whole transaction back. The node is reported as already completed only
  when its completion row exists afterwards, otherwise the write is tried
  once more
- first-writer-wins path storage: a losing writer reads back the winner
- idempotent progress-row creation; rows created inside a completion use
  INSERT .. ON CONFLICT DO NOTHING so they never abort it
- bounded retry: OperationalError is retried with exponential backoff, then
  surfaced as PersistenceFailure

Writes for one (user, world) are additionally serialized in-process with an
asyncio.Lock so one worker never races itself. Idle locks are evicted
once more than max_locks keys are tracked.
"""

from __future__ import annotations

import asyncio
import functools
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar

from sqlalchemy import delete, select, text
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .. import config
from ..errors import PersistenceFailure
from ..logging import get_logger
from ..models import AdventurePath, BossVictory, NodeCompletion, UserWorldProgress, XpCredit
from .path_generator import GeneratedPath, Node, NodeType

logger = get_logger(__name__)

T = TypeVar("T")

# World status order; a status only ever moves to the right
WORLD_STATUSES = ("locked", "unlocked", "in_progress", "completed")

# Dialects whose INSERT supports ON CONFLICT DO NOTHING
DIALECT_INSERTS = {"sqlite": sqlite_insert, "postgresql": postgresql_insert}


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def completion_key(user_id: str, world_number: int, position_key: str) -> str:
    return f"{user_id}:{world_number}:{position_key}"


def retrying(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Retry a store method on OperationalError, at most store.retry_attempts tries."""

    @functools.wraps(func)
    async def wrapper(self: "ProgressStore", *args: Any, **kwargs: Any) -> T:
        delay = self.retry_backoff
        attempt = 1
        while True:
            try:
                return await func(self, *args, **kwargs)
            except OperationalError as e:
                if attempt >= self.retry_attempts:
                    logger.error("%s failed after %d attempts: %s", func.__name__, attempt, e)
                    raise PersistenceFailure(f"Progress storage unavailable ({func.__name__})") from e
                logger.warning("%s hit %s; retrying in %.2fs", func.__name__, e.__class__.__name__, delay)
                await asyncio.sleep(delay)
                delay *= 2
                attempt += 1
            except IntegrityError:
                raise
            except SQLAlchemyError as e:
                logger.exception("%s failed", func.__name__)
                raise PersistenceFailure(f"Progress storage error ({func.__name__})") from e

    return wrapper


@dataclass(frozen=True)
class CompletionOutcome:
    """Result of one record_completion call."""

    completion_key: str
    already_completed: bool
    progress: UserWorldProgress
    node_type: str
    reward_xp: int
    world_completed: bool = False
    next_world_unlocked: bool = False
    next_world_number: int | None = None


class ProgressStore:
    """
    Usage:
        store = ProgressStore(session_factory)
        progress = await store.get_or_create_progress(user_id, 1, "unlocked")
        path = await store.save_path_if_absent(user_id, generated)
        outcome = await store.record_completion(user_id, 1, node, next_world=2)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        retry_attempts: int = config.DB_RETRY_ATTEMPTS,
        retry_backoff: float = config.DB_RETRY_BACKOFF,
        max_locks: int = 1024,
    ) -> None:
        self._session_factory = session_factory
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff = retry_backoff
        self.max_locks = max(1, max_locks)
        self._locks: OrderedDict[tuple[str, int], asyncio.Lock] = OrderedDict()

    def _lock(self, user_id: str, world_number: int) -> asyncio.Lock:
        key = (user_id, world_number)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._locks.move_to_end(key)
        if len(self._locks) > self.max_locks:
            # Oldest first; a held lock stays
            for stale in [k for k, v in self._locks.items() if k != key and not v.locked()]:
                del self._locks[stale]
                if len(self._locks) <= self.max_locks:
                    break
        return lock

    @staticmethod
    async def _select_progress(session: AsyncSession, user_id: str, world_number: int) -> UserWorldProgress | None:
        result = await session.execute(
            select(UserWorldProgress).where(
                UserWorldProgress.user_id == user_id,
                UserWorldProgress.world_number == world_number,
            )
        )
        return result.scalar_one_or_none()

    # ---------- Progress rows ----------

    @retrying
    async def get_progress(self, user_id: str, world_number: int) -> UserWorldProgress | None:
        async with self._session_factory() as session:
            return await self._select_progress(session, user_id, world_number)

    @retrying
    async def list_progress(self, user_id: str) -> list[UserWorldProgress]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(UserWorldProgress)
                .where(UserWorldProgress.user_id == user_id)
                .order_by(UserWorldProgress.world_number)
            )
            return list(result.scalars().all())

    @retrying
    async def get_or_create_progress(self, user_id: str, world_number: int, status: str) -> UserWorldProgress:
        """Return the (user, world) row, creating it with ``status`` on first access."""
        existing = await self._get_progress_once(user_id, world_number)
        if existing is not None:
            return existing
        async with self._lock(user_id, world_number):
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        progress = UserWorldProgress(
                            user_id=user_id,
                            world_number=world_number,
                            world_status=status,
                            current_position="level_1",
                            levels_completed=0,
                            total_levels=0,
                            total_xp_earned=0,
                            mini_boss_defeated=False,
                            boss_defeated=False,
                        )
                        session.add(progress)
                logger.debug("Created progress for user %s world %d (%s)", user_id, world_number, status)
                return progress
            except IntegrityError:
                # Someone else created it first
                winner = await self._get_progress_once(user_id, world_number)
                if winner is None:
                    raise
                return winner

    async def _get_progress_once(self, user_id: str, world_number: int) -> UserWorldProgress | None:
        async with self._session_factory() as session:
            return await self._select_progress(session, user_id, world_number)

    @retrying
    async def promote_world(self, user_id: str, world_number: int, status: str) -> UserWorldProgress | None:
        """Move a world forward to ``status``. Never moves it backwards."""
        async with self._lock(user_id, world_number):
            async with self._session_factory() as session:
                async with session.begin():
                    progress = await self._select_progress(session, user_id, world_number)
                    if progress is None:
                        return None
                    if WORLD_STATUSES.index(progress.world_status) < WORLD_STATUSES.index(status):
                        progress.world_status = status
                        if status == "in_progress" and progress.started_at is None:
                            progress.started_at = utcnow()
                return progress

    @retrying
    async def set_position(self, user_id: str, world_number: int, position_key: str) -> UserWorldProgress | None:
        """Record the current node; a world the user moves in becomes in_progress."""
        async with self._lock(user_id, world_number):
            async with self._session_factory() as session:
                async with session.begin():
                    progress = await self._select_progress(session, user_id, world_number)
                    if progress is None:
                        return None
                    progress.current_position = position_key
                    if progress.world_status == "unlocked":
                        progress.world_status = "in_progress"
                    if progress.started_at is None:
                        progress.started_at = utcnow()
                return progress

    # ---------- Paths ----------

    @staticmethod
    def _path_from_row(row: AdventurePath) -> GeneratedPath:
        return GeneratedPath(
            world_number=row.world_number,
            nodes=tuple(Node.from_dict(n) for n in row.nodes),
            generator=row.generator,
            created_at=as_utc(row.created_at),
        )

    @retrying
    async def get_path(self, user_id: str, world_number: int) -> GeneratedPath | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AdventurePath).where(
                    AdventurePath.user_id == user_id,
                    AdventurePath.world_number == world_number,
                )
            )
            row = result.scalar_one_or_none()
            return self._path_from_row(row) if row else None

    @retrying
    async def save_path_if_absent(self, user_id: str, path: GeneratedPath) -> GeneratedPath:
        """
        Store ``path`` unless one already exists. Returns whichever path is
        stored afterwards, so every caller ends up with the same graph.
        """
        async with self._lock(user_id, path.world_number):
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        session.add(
                            AdventurePath(
                                user_id=user_id,
                                world_number=path.world_number,
                                nodes=[n.to_dict() for n in path.nodes],
                                start_node=path.start_node.position_key,
                                total_levels=path.total_levels,
                                mini_boss_position=path.mini_boss_position,
                                generator=path.generator,
                                created_at=path.created_at,
                            )
                        )
                        await session.flush()
                        progress = await self._select_progress(session, user_id, path.world_number)
                        if progress is not None:
                            progress.total_levels = path.total_levels
                            if progress.levels_completed == 0:
                                progress.current_position = path.start_node.position_key
                logger.info(
                    "Stored %s path for user %s world %d (%d nodes)",
                    path.generator,
                    user_id,
                    path.world_number,
                    path.total_levels,
                )
                return path
            except IntegrityError:
                logger.info("Path for user %s world %d already stored; using it", user_id, path.world_number)
        winner = await self.get_path(user_id, path.world_number)
        if winner is None:
            raise PersistenceFailure("Path vanished after a conflicting insert")
        return winner

    # ---------- Completions ----------

    @retrying
    async def completed_nodes(self, user_id: str, world_number: int) -> dict[str, datetime]:
        """position_key -> completed_at for every completed node of the world."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(NodeCompletion.position_key, NodeCompletion.completed_at).where(
                    NodeCompletion.user_id == user_id,
                    NodeCompletion.world_number == world_number,
                )
            )
            return {key: as_utc(completed_at) for key, completed_at in result.all()}

    @retrying
    async def record_completion(
        self,
        user_id: str,
        world_number: int,
        node: Node,
        *,
        reason: str,
        next_world: int | None = None,
        boss_name: str | None = None,
    ) -> CompletionOutcome:
        """
        Apply one node completion atomically:
        completion row, counters, flags, position, world completion,
        next-world unlock, boss history and the pending XP credit.

        A node that is already completed changes nothing and comes back with
        already_completed=True.
        """
        key = completion_key(user_id, world_number, node.position_key)
        async with self._lock(user_id, world_number):
            for attempt in (1, 2):
                try:
                    return await self._apply_completion(
                        user_id, world_number, node, key, reason=reason, next_world=next_world, boss_name=boss_name
                    )
                except IntegrityError as e:
                    async with self._session_factory() as session:
                        recorded = await session.scalar(
                            select(NodeCompletion.id).where(
                                NodeCompletion.user_id == user_id,
                                NodeCompletion.world_number == world_number,
                                NodeCompletion.position_key == node.position_key,
                            )
                        )
                    if recorded is not None:
                        break
                    if attempt == 2:
                        raise PersistenceFailure(f"Could not record completion {key}") from e
                    logger.warning("Completion %s rolled back by a conflicting write; retrying once", key)

        logger.info("Node %s already completed; nothing to do", key)
        progress = await self._get_progress_once(user_id, world_number)
        return CompletionOutcome(
            completion_key=key,
            already_completed=True,
            progress=progress,
            node_type=node.type.value,
            reward_xp=node.reward_xp,
            world_completed=(
                node.type is NodeType.BOSS and progress is not None and progress.world_status == "completed"
            ),
        )

    async def _apply_completion(
        self,
        user_id: str,
        world_number: int,
        node: Node,
        key: str,
        *,
        reason: str,
        next_world: int | None,
        boss_name: str | None,
    ) -> CompletionOutcome:
        now = utcnow()
        async with self._session_factory() as session:
            async with session.begin():
                session.add(
                    NodeCompletion(
                        user_id=user_id,
                        world_number=world_number,
                        position_key=node.position_key,
                        node_type=node.type.value,
                        reward_xp=node.reward_xp,
                        completed_at=now,
                    )
                )
                await session.flush()

                progress = await self._ensure_progress(
                    session, user_id, world_number, "unlocked", position=node.position_key
                )
                progress.levels_completed += 1
                progress.total_xp_earned += node.reward_xp
                if progress.started_at is None:
                    progress.started_at = now
                if progress.world_status in ("locked", "unlocked"):
                    progress.world_status = "in_progress"
                if node.connections:
                    progress.current_position = node.connections[0]

                world_completed = False
                next_unlocked = False
                if node.type is NodeType.MINI_BOSS:
                    progress.mini_boss_defeated = True
                elif node.type is NodeType.BOSS:
                    progress.boss_defeated = True
                    progress.world_status = "completed"
                    progress.completed_at = now
                    world_completed = True
                    session.add(
                        BossVictory(
                            user_id=user_id,
                            world_number=world_number,
                            boss_type=node.type.value,
                            boss_name=boss_name or node.name,
                            xp_earned=node.reward_xp,
                            completed_at=now,
                        )
                    )
                    if next_world is not None:
                        next_unlocked = await self._unlock_world(session, user_id, next_world)

                session.add(
                    XpCredit(
                        completion_key=key,
                        user_id=user_id,
                        world_number=world_number,
                        amount=node.reward_xp,
                        reason=reason,
                        status="pending",
                        attempts=0,
                        created_at=now,
                    )
                )

        return CompletionOutcome(
            completion_key=key,
            already_completed=False,
            progress=progress,
            node_type=node.type.value,
            reward_xp=node.reward_xp,
            world_completed=world_completed,
            next_world_unlocked=next_unlocked,
            next_world_number=next_world if next_unlocked else None,
        )

    async def _ensure_progress(
        self,
        session: AsyncSession,
        user_id: str,
        world_number: int,
        status: str,
        *,
        position: str = "level_1",
    ) -> UserWorldProgress:
        """Insert the (user, world) row unless present, then load it. Never conflicts."""
        insert = DIALECT_INSERTS.get(session.get_bind().dialect.name)
        values = dict(
            user_id=user_id,
            world_number=world_number,
            world_status=status,
            current_position=position,
            levels_completed=0,
            total_levels=0,
            total_xp_earned=0,
            mini_boss_defeated=False,
            boss_defeated=False,
        )
        if insert is not None:
            await session.execute(
                insert(UserWorldProgress).values(**values).on_conflict_do_nothing(
                    index_elements=["user_id", "world_number"]
                )
            )
        elif await self._select_progress(session, user_id, world_number) is None:
            session.add(UserWorldProgress(**values))
            await session.flush()
        return await self._select_progress(session, user_id, world_number)

    async def _unlock_world(self, session: AsyncSession, user_id: str, world_number: int) -> bool:
        """Create or promote the next world's row to unlocked inside the open transaction."""
        following = await self._ensure_progress(session, user_id, world_number, "unlocked")
        if following.world_status == "locked":
            following.world_status = "unlocked"
        return True

    @retrying
    async def boss_victories(self, user_id: str) -> list[BossVictory]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(BossVictory).where(BossVictory.user_id == user_id).order_by(BossVictory.completed_at)
            )
            return list(result.scalars().all())

    # ---------- XP credit ledger ----------

    @retrying
    async def pending_credits(self, user_id: str | None = None) -> list[XpCredit]:
        async with self._session_factory() as session:
            query = select(XpCredit).where(XpCredit.status == "pending").order_by(XpCredit.id)
            if user_id is not None:
                query = query.where(XpCredit.user_id == user_id)
            result = await session.execute(query)
            return list(result.scalars().all())

    @retrying
    async def get_credit(self, key: str) -> XpCredit | None:
        async with self._session_factory() as session:
            result = await session.execute(select(XpCredit).where(XpCredit.completion_key == key))
            return result.scalar_one_or_none()

    @retrying
    async def mark_credit(self, key: str, *, success: bool, error: str | None = None) -> XpCredit | None:
        """Record one delivery attempt. A credited row is never reopened."""
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(select(XpCredit).where(XpCredit.completion_key == key))
                credit = result.scalar_one_or_none()
                if credit is None or credit.status == "credited":
                    return credit
                credit.attempts += 1
                if success:
                    credit.status = "credited"
                    credit.credited_at = utcnow()
                    credit.last_error = None
                else:
                    credit.last_error = error
            return credit

    @retrying
    async def ping(self) -> bool:
        async with self._session_factory() as session:
            await session.execute(text("SELECT 1"))
        return True

    # ---------- Reset ----------

    @retrying
    async def reset_user(self, user_id: str) -> int:
        """Delete every adventure row of one user. Returns the number of rows removed."""
        removed = 0
        async with self._session_factory() as session:
            async with session.begin():
                for model in (NodeCompletion, XpCredit, BossVictory, AdventurePath, UserWorldProgress):
                    result = await session.execute(delete(model).where(model.user_id == user_id))
                    removed += result.rowcount or 0
        logger.info("Reset adventure state for user %s (%d rows)", user_id, removed)
        return removed
