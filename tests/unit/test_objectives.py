"""
Unit tests for objective specs and the ObjectiveEvaluator.

Covers every objective type, the local-day boundary, and conjunction of a
node's objectives.
"""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from questmap.engine.objectives import (
    NodeEvaluation,
    Objective,
    ObjectiveEvaluator,
    ObjectiveType,
    UserStats,
    completed_today,
)
from questmap.engine.tasks import TaskSnapshot
from questmap.errors import InvalidArgument
from tests.fixtures.tasks import done_today, done_yesterday, make_task, open_tasks


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def evaluator() -> ObjectiveEvaluator:
    return ObjectiveEvaluator()


@pytest.fixture
def stats() -> UserStats:
    return UserStats.now(timezone.utc)


def quantity(count: int) -> Objective:
    return Objective(ObjectiveType.DAILY_QUANTITY, {"count": count}, f"Complete {count} tasks today")


# ============================================================================
# Objective Parsing
# ============================================================================


@pytest.mark.unit
def test_objective_from_dict_accepts_target_and_data():
    """Objective.from_dict reads both the 'target' and legacy 'data' keys."""
    a = Objective.from_dict({"type": "daily_quantity", "target": {"count": 3}})
    b = Objective.from_dict({"type": "daily_quantity", "data": {"count": 3}})
    assert a.type is ObjectiveType.DAILY_QUANTITY
    assert a.target == b.target == {"count": 3}


@pytest.mark.unit
def test_objective_from_dict_rejects_unknown_type():
    """An unknown objective type is malformed input."""
    with pytest.raises(InvalidArgument):
        Objective.from_dict({"type": "slay_dragon", "target": {}})


@pytest.mark.unit
def test_non_numeric_count_is_invalid(evaluator, stats):
    """A count that is not a number is rejected instead of evaluated."""
    objective = Objective(ObjectiveType.DAILY_QUANTITY, {"count": "lots"})
    with pytest.raises(InvalidArgument):
        evaluator.evaluate(objective, TaskSnapshot(), stats)


# ============================================================================
# daily_quantity
# ============================================================================


@pytest.mark.unit
def test_daily_quantity_unsatisfied_with_empty_snapshot(evaluator, stats):
    """Zero tasks completed today leaves daily_quantity(1) unsatisfied."""
    result = evaluator.evaluate(quantity(1), TaskSnapshot(), stats)
    assert result.satisfied is False
    assert (result.progress_current, result.progress_required) == (0, 1)


@pytest.mark.unit
def test_daily_quantity_satisfied_with_one_completion(evaluator, stats):
    """One task completed today satisfies daily_quantity(1)."""
    snapshot = TaskSnapshot.of(done_today(1))
    result = evaluator.evaluate(quantity(1), snapshot, stats)
    assert result.satisfied is True
    assert result.fraction == 1.0


@pytest.mark.unit
def test_daily_quantity_ignores_yesterday(evaluator, stats):
    """Completions from an earlier calendar day do not count."""
    snapshot = TaskSnapshot.of(done_yesterday(5) + done_today(2))
    result = evaluator.evaluate(quantity(3), snapshot, stats)
    assert result.satisfied is False
    assert result.progress_current == 2


@pytest.mark.unit
def test_daily_quantity_progress_is_capped(evaluator, stats):
    """Progress never reports more than the requirement."""
    snapshot = TaskSnapshot.of(done_today(7))
    result = evaluator.evaluate(quantity(3), snapshot, stats)
    assert result.progress_current == 3
    assert result.to_dict()["fraction"] == 1.0


@pytest.mark.unit
def test_today_follows_user_timezone():
    """'Today' is the user's local calendar day, not the UTC one."""
    tz = ZoneInfo("America/Los_Angeles")
    # 03:00 UTC on June 2 is still June 1 in Los Angeles
    finished = datetime(2026, 6, 2, 3, 0, tzinfo=timezone.utc)
    task = make_task("late", completed=True, completed_at=finished)

    local = UserStats(today=finished.astimezone(tz).date(), tz=tz)
    utc = UserStats(today=finished.date(), tz=timezone.utc)
    assert completed_today([task], local) == [task]
    assert completed_today([task], utc) == [task]

    next_local_day = UserStats(today=local.today + timedelta(days=1), tz=tz)
    assert completed_today([task], next_local_day) == []


# ============================================================================
# complete_task
# ============================================================================


@pytest.mark.unit
def test_complete_task_bound_to_task_id(evaluator, stats):
    """A bound complete_task objective follows that one task."""
    objective = Objective(ObjectiveType.COMPLETE_TASK, {"task_id": "t1", "task_title": "Task t1"})
    pending = TaskSnapshot.of([make_task("t1"), make_task("t2", completed=True)])
    done = TaskSnapshot.of([make_task("t1", completed=True)])

    assert evaluator.evaluate(objective, pending, stats).satisfied is False
    assert evaluator.evaluate(objective, done, stats).satisfied is True


@pytest.mark.unit
def test_complete_task_missing_task_is_unsatisfied(evaluator, stats):
    """A bound task that disappeared from the provider cannot satisfy the objective."""
    objective = Objective(ObjectiveType.COMPLETE_TASK, {"task_id": "gone"})
    result = evaluator.evaluate(objective, TaskSnapshot.of(done_today(3)), stats)
    assert result.satisfied is False


@pytest.mark.unit
def test_complete_task_unbound_uses_node_start(evaluator):
    """Unbound complete_task needs a completion at or after the node started."""
    objective = Objective(ObjectiveType.COMPLETE_TASK, {})
    started = datetime.now(timezone.utc)
    before = make_task("old", completed=True, completed_at=started - timedelta(minutes=5))
    after = make_task("new", completed=True, completed_at=started + timedelta(minutes=5))
    stats = UserStats.now(timezone.utc, node_started_at=started)

    assert evaluator.evaluate(objective, TaskSnapshot.of([before]), stats).satisfied is False
    assert evaluator.evaluate(objective, TaskSnapshot.of([before, after]), stats).satisfied is True


@pytest.mark.unit
def test_complete_task_unbound_without_start(evaluator, stats):
    """With no node start time any completed task counts."""
    objective = Objective(ObjectiveType.COMPLETE_TASK, {})
    assert evaluator.evaluate(objective, TaskSnapshot.of(open_tasks(2)), stats).satisfied is False
    assert evaluator.evaluate(objective, TaskSnapshot.of(done_yesterday(1)), stats).satisfied is True


# ============================================================================
# priority_clear / complete_all_available / category_diversity
# ============================================================================


@pytest.mark.unit
def test_priority_clear(evaluator, stats):
    """priority_clear holds once no incomplete task remains at that priority."""
    objective = Objective(ObjectiveType.PRIORITY_CLEAR, {"priority": "high"})
    blocked = TaskSnapshot.of([make_task("h1", priority="high"), make_task("h2", priority="high", completed=True)])
    cleared = TaskSnapshot.of([make_task("h2", priority="high", completed=True), make_task("m1")])

    result = evaluator.evaluate(objective, blocked, stats)
    assert result.satisfied is False
    assert (result.progress_current, result.progress_required) == (1, 2)
    assert evaluator.evaluate(objective, cleared, stats).satisfied is True


@pytest.mark.unit
def test_priority_clear_vacuous(evaluator, stats):
    """No tasks at the priority at all counts as cleared."""
    objective = Objective(ObjectiveType.PRIORITY_CLEAR, {"priority": "high"})
    assert evaluator.evaluate(objective, TaskSnapshot.of(open_tasks(3)), stats).satisfied is True


@pytest.mark.unit
def test_complete_all_available(evaluator, stats):
    objective = Objective(ObjectiveType.COMPLETE_ALL_AVAILABLE, {})
    assert evaluator.evaluate(objective, TaskSnapshot.of(open_tasks(1) + done_today(2)), stats).satisfied is False
    assert evaluator.evaluate(objective, TaskSnapshot.of(done_today(2)), stats).satisfied is True
    assert evaluator.evaluate(objective, TaskSnapshot(), stats).satisfied is True


@pytest.mark.unit
def test_category_diversity_counts_distinct_buckets(evaluator, stats):
    """Categories fall back to the list id when a task has none."""
    objective = Objective(ObjectiveType.CATEGORY_DIVERSITY, {"category_count": 2})
    same = TaskSnapshot.of(done_today(3, category="work"))
    mixed = TaskSnapshot.of(
        done_today(1, prefix="w", category="work")
        + [make_task("h1", completed=True, category=None, list_id="home")]
    )

    assert evaluator.evaluate(objective, same, stats).satisfied is False
    result = evaluator.evaluate(objective, mixed, stats)
    assert result.satisfied is True
    assert result.progress_current == 2


# ============================================================================
# Conjunction
# ============================================================================


@pytest.mark.unit
def test_evaluate_all_is_a_conjunction(evaluator, stats):
    """A node is satisfied only when every objective is."""
    objectives = [quantity(2), Objective(ObjectiveType.CATEGORY_DIVERSITY, {"category_count": 2})]
    snapshot = TaskSnapshot.of(done_today(2, category="work"))

    evaluation = evaluator.evaluate_all(objectives, snapshot, stats)
    assert isinstance(evaluation, NodeEvaluation)
    assert [r.satisfied for r in evaluation.results] == [True, False]
    assert evaluation.satisfied is False
    assert evaluation.to_dict()["objectives"][0]["type"] == "daily_quantity"


@pytest.mark.unit
def test_evaluation_carries_degraded_flag(evaluator, stats):
    evaluation = evaluator.evaluate_all([quantity(1)], TaskSnapshot(degraded=True), stats)
    assert evaluation.snapshot_degraded is True
