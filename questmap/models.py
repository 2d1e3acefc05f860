# questmap/models.py
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, Integer, MetaData, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Naming convention for constraints (required for batch migrations)
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s"
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=convention)


class UserWorldProgress(Base):
    """
    One row per (user, world). The only mutable adventure state besides the
    completion and credit ledgers.

    world_status moves locked -> unlocked -> in_progress -> completed and
    never back. levels_completed and total_xp_earned only grow.
    """
    __tablename__ = "adventure_progress"
    __table_args__ = (UniqueConstraint("user_id", "world_number", name="uq_adventure_progress_user_world"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    world_number: Mapped[int] = mapped_column(Integer, nullable=False)
    world_status: Mapped[str] = mapped_column(String, nullable=False, server_default="locked")
    current_position: Mapped[str] = mapped_column(String, nullable=False, server_default="level_1")

    levels_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    total_levels: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    total_xp_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    mini_boss_defeated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    boss_defeated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def to_dict(self) -> dict:
        return {
            "world_number": self.world_number,
            "world_status": self.world_status,
            "current_position": self.current_position,
            "levels_completed": self.levels_completed,
            "total_levels": self.total_levels,
            "total_xp_earned": self.total_xp_earned,
            "mini_boss_defeated": self.mini_boss_defeated,
            "boss_defeated": self.boss_defeated,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class AdventurePath(Base):
    """The generated node graph for one (user, world). Written once, never regenerated."""
    __tablename__ = "adventure_paths"
    __table_args__ = (UniqueConstraint("user_id", "world_number", name="uq_adventure_paths_user_world"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    world_number: Mapped[int] = mapped_column(Integer, nullable=False)
    nodes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    start_node: Mapped[str] = mapped_column(String, nullable=False)
    total_levels: Mapped[int] = mapped_column(Integer, nullable=False)
    mini_boss_position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    generator: Mapped[str] = mapped_column(String, nullable=False, server_default="scaled")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class NodeCompletion(Base):
    """Completed-node set. The unique key is what makes completion at-most-once."""
    __tablename__ = "adventure_node_completions"
    __table_args__ = (
        UniqueConstraint("user_id", "world_number", "position_key", name="uq_adventure_node_completions_node"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    world_number: Mapped[int] = mapped_column(Integer, nullable=False)
    position_key: Mapped[str] = mapped_column(String, nullable=False)
    node_type: Mapped[str] = mapped_column(String, nullable=False)
    reward_xp: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class XpCredit(Base):
    """
    Reward ledger. One row per node completion; status stays "pending" until
    the XP service acknowledges the credit.
    """
    __tablename__ = "adventure_xp_credits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    completion_key: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    world_number: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, server_default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    credited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class BossVictory(Base):
    """Boss-completion history."""
    __tablename__ = "adventure_boss_wins"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    world_number: Mapped[int] = mapped_column(Integer, nullable=False)
    boss_type: Mapped[str] = mapped_column(String, nullable=False)
    boss_name: Mapped[str] = mapped_column(String, nullable=False)
    xp_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
