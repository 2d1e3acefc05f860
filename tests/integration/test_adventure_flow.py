"""
End-to-end flows through the AdventureEngine.

Runs whole worlds against the in-memory database, task source and XP
service: path generation on first visit, objective checks, boss unlocks,
deferred XP credits and degraded task data.
"""

import pytest

from questmap.engine.adventure import AdventureEngine
from questmap.engine.objectives import ObjectiveType
from questmap.engine.path_generator import NodeType
from questmap.errors import NotAccessible, NotFound, ObjectiveUnmet, UpstreamUnavailable
from questmap.engine.rewards import InMemoryXpService
from tests.fixtures.tasks import done_today, open_tasks


class SwitchableXp:
    """InMemoryXpService that can be taken offline."""

    def __init__(self):
        self.inner = InMemoryXpService()
        self.online = True
        self.attempts = 0

    async def award_xp(self, user_id, amount, reason, idempotency_key):
        self.attempts += 1
        if not self.online:
            raise UpstreamUnavailable("XP service offline")
        return await self.inner.award_xp(user_id, amount, reason, idempotency_key)


async def clear_world(adventure, user_id, world_number):
    """Complete every node of a world whose objectives are already met."""
    view = await adventure.get_world_path(user_id, world_number)
    results = []
    for node in view["path"]["nodes"]:
        if node["type"] == NodeType.BOSS.value:
            results.append(await adventure.complete_boss(user_id, world_number))
        else:
            check = await adventure.complete_level(user_id, world_number, node["position_key"])
            results.append(check.completion.to_dict())
    return results


# ============================================================================
# First Visit
# ============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
async def test_first_map_generates_world_one(adventure, task_source, user_id):
    """A new user lands on world 1 with a generated path and level_1 open."""
    task_source.set_tasks(user_id, open_tasks(6))

    view = await adventure.get_map(user_id)

    assert view["current_world"] == 1
    assert view["total_worlds"] == 8
    assert view["path"]["total_levels"] == 7
    assert view["current_position"] == "level_1"
    assert view["boss_accessible"] is False
    statuses = [n["status"] for n in view["path"]["nodes"]]
    assert statuses[0] == "unlocked"
    assert set(statuses[1:]) == {"locked"}


@pytest.mark.integration
@pytest.mark.asyncio
async def test_map_is_stable_across_reads(adventure, task_source, user_id):
    """The path is generated once; later task changes do not regenerate it."""
    task_source.set_tasks(user_id, open_tasks(2))
    first = await adventure.get_map(user_id)

    task_source.set_tasks(user_id, open_tasks(30))
    second = await adventure.get_map(user_id)

    assert first["path"]["nodes"] == second["path"]["nodes"]
    assert second["progress"]["total_levels"] == first["path"]["total_levels"]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_locked_world(adventure, user_id):
    with pytest.raises(NotAccessible):
        await adventure.get_world_path(user_id, 2)

    boss = await adventure.get_boss_challenge(user_id, 2)
    assert boss["accessible"] is False
    assert boss["node"] is None
    # No path is generated for a locked world
    assert await adventure.store.get_path(user_id, 2) is None


@pytest.mark.integration
@pytest.mark.asyncio
async def test_unknown_world_and_node(adventure, user_id):
    with pytest.raises(NotFound):
        await adventure.get_world_path(user_id, 99)
    with pytest.raises(NotFound):
        await adventure.complete_level(user_id, 1, "level_99")


@pytest.mark.integration
@pytest.mark.asyncio
async def test_list_worlds(adventure, user_id):
    worlds = await adventure.list_worlds(user_id)
    assert [w["status"] for w in worlds] == ["unlocked"] + ["locked"] * 7
    assert worlds[0]["is_current"] is True
    assert worlds[0]["boss"]["name"] == "Village Elder Challenge"


# ============================================================================
# Level Completion
# ============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
async def test_single_completion_satisfies_first_level(adventure, task_source, xp_service, user_id):
    """daily_quantity(1) with one task done today completes the level and credits XP once."""
    task_source.set_tasks(user_id, done_today(1))
    await adventure.get_map(user_id)

    check = await adventure.complete_level(user_id, 1, "level_1")

    assert check.completed
    result = check.completion
    assert result.already_completed is False
    assert result.credit_pending is False
    assert result.xp_earned > 0
    assert result.progress["levels_completed"] == 1
    assert result.progress["current_position"] == "level_2"
    assert len(xp_service.credits) == 1
    assert xp_service.credits[0][3] == f"{user_id}:1:level_1"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_unmet_objectives_raise_with_progress(adventure, task_source, user_id):
    task_source.set_tasks(user_id, open_tasks(1))
    await adventure.get_map(user_id)

    with pytest.raises(ObjectiveUnmet) as exc_info:
        await adventure.complete_level(user_id, 1, "level_1")

    evaluation = exc_info.value.evaluation
    assert evaluation.satisfied is False
    assert (await adventure.store.get_progress(user_id, 1)).levels_completed == 0


@pytest.mark.integration
@pytest.mark.asyncio
async def test_locked_level_is_not_accessible(adventure, task_source, user_id):
    task_source.set_tasks(user_id, done_today(3))
    await adventure.get_map(user_id)
    with pytest.raises(NotAccessible):
        await adventure.complete_level(user_id, 1, "level_3")


@pytest.mark.integration
@pytest.mark.asyncio
async def test_repeat_completion_is_a_no_op(adventure, task_source, xp_service, user_id):
    """Completing the same node twice changes nothing and credits nothing more."""
    task_source.set_tasks(user_id, done_today(1))
    await adventure.get_map(user_id)
    first = await adventure.complete_level(user_id, 1, "level_1")
    again = await adventure.complete_level(user_id, 1, "level_1")

    assert again.completion.already_completed is True
    assert again.completion.xp_earned == 0
    assert again.completion.progress["levels_completed"] == 1
    assert again.completion.progress["total_xp_earned"] == first.completion.xp_earned
    assert len(xp_service.credits) == 1


@pytest.mark.integration
@pytest.mark.asyncio
async def test_mini_boss_needs_three_completions(adventure, task_source, user_id):
    """With 3 open tasks the mini-boss asks for 3 completions today."""
    task_source.set_tasks(user_id, open_tasks(3))
    view = await adventure.get_map(user_id)
    nodes = view["path"]["nodes"]
    mini = next(n for n in nodes if n["type"] == NodeType.MINI_BOSS.value)
    assert mini["objectives"][0]["target"]["count"] == 3

    # Each regular node is bound to one of the open tasks
    for node in nodes:
        if node["type"] != NodeType.REGULAR.value:
            continue
        task_id = node["objectives"][0]["target"]["task_id"]
        response = await adventure.complete_task(user_id, task_id)
        assert response["node_check"]["completed"] is True
        assert response["node_check"]["position_key"] == node["position_key"]

    check = await adventure.complete_level(user_id, 1, mini["position_key"])
    assert check.completion.node_type == NodeType.MINI_BOSS.value
    assert check.completion.progress["mini_boss_defeated"] is True


@pytest.mark.integration
@pytest.mark.asyncio
async def test_complete_task_reports_unmet_node(adventure, task_source, user_id):
    """A task that does not satisfy the current node leaves it open."""
    task_source.set_tasks(user_id, open_tasks(4))
    view = await adventure.get_map(user_id)
    bound = view["path"]["nodes"][0]["objectives"][0]["target"]["task_id"]
    other = next(t.id for t in open_tasks(4) if t.id != bound)

    response = await adventure.complete_task(user_id, other)

    assert response["task"]["completed"] is True
    assert response["node_check"]["completed"] is False
    assert response["node_check"]["evaluation"]["satisfied"] is False


@pytest.mark.integration
@pytest.mark.asyncio
async def test_complete_unknown_task(adventure, user_id):
    with pytest.raises(NotFound):
        await adventure.complete_task(user_id, "missing")


# ============================================================================
# Bosses and World Unlocks
# ============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
async def test_boss_needs_mini_boss_first(adventure, task_source, user_id):
    task_source.set_tasks(user_id, done_today(2))
    await adventure.get_map(user_id)
    await adventure.complete_level(user_id, 1, "level_1")

    with pytest.raises(NotAccessible):
        await adventure.complete_boss(user_id, 1)
    challenge = await adventure.get_boss_challenge(user_id, 1)
    assert challenge["accessible"] is False
    assert challenge["node"]["status"] == "locked"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_full_world_unlocks_the_next(adventure, task_source, xp_service, user_id):
    """Clearing world 1 completes it, records the boss and opens world 2."""
    task_source.set_tasks(user_id, done_today(5))
    await adventure.get_map(user_id)

    results = await clear_world(adventure, user_id, 1)
    boss = results[-1]

    assert boss["boss_defeated"] is True
    assert boss["boss_name"] == "Village Elder Challenge"
    assert boss["world_completed"] is True
    assert boss["next_world_unlocked"] is True
    assert boss["next_world_number"] == 2
    assert len(xp_service.credits) == 4

    view = await adventure.get_map(user_id)
    assert view["current_world"] == 2
    assert view["world"]["name"] == "Desert Pyramid"

    progress = await adventure.get_progress(user_id)
    assert progress["summary"]["completed_worlds"] == 1
    assert progress["summary"]["total_bosses_defeated"] == 1
    assert progress["summary"]["total_levels_completed"] == 4
    assert [v["world_number"] for v in progress["boss_victories"]] == [1]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_final_world_unlocks_nothing(adventure, task_source, user_id):
    task_source.set_tasks(user_id, done_today(10))
    await adventure.store.get_or_create_progress(user_id, 7, "completed")

    results = await clear_world(adventure, user_id, 8)
    boss = results[-1]

    assert boss["world_completed"] is True
    assert boss["next_world_unlocked"] is False
    assert boss["next_world_number"] is None


@pytest.mark.integration
@pytest.mark.asyncio
async def test_boss_unmet(adventure, task_source, user_id):
    """With an open task left the boss (complete everything) is not beaten."""
    task_source.set_tasks(user_id, done_today(5))
    await adventure.get_map(user_id)
    for key in ("level_1", "level_2", "level_3"):
        await adventure.complete_level(user_id, 1, key)

    task_source.add_task(user_id, open_tasks(1)[0])
    with pytest.raises(ObjectiveUnmet) as exc_info:
        await adventure.complete_boss(user_id, 1)
    assert exc_info.value.message == "Boss challenge not completed"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_hard_boss_needs_its_daily_count_with_few_tasks(adventure, task_source, user_id):
    """One finished task clears the levels of world 8 but not its boss."""
    task_source.set_tasks(user_id, done_today(1))
    await adventure.store.get_or_create_progress(user_id, 7, "completed")
    for key in ("level_1", "level_2", "level_3"):
        await adventure.complete_level(user_id, 8, key)

    with pytest.raises(ObjectiveUnmet) as exc_info:
        await adventure.complete_boss(user_id, 8)
    results = exc_info.value.evaluation.results
    assert results[0].objective.type is ObjectiveType.DAILY_QUANTITY
    assert results[0].objective.target["count"] == 10
    assert results[0].satisfied is False


@pytest.mark.integration
@pytest.mark.asyncio
async def test_counters_never_decrease(adventure, task_source, user_id):
    task_source.set_tasks(user_id, done_today(2))
    await adventure.get_map(user_id)

    seen = []
    for key in ("level_1", "level_2", "level_1", "level_3"):
        check = await adventure.complete_level(user_id, 1, key)
        seen.append(check.completion.progress["levels_completed"])
    assert seen == sorted(seen) == [1, 2, 2, 3]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_replayed_level_does_not_report_world_completed(adventure, task_source, user_id):
    task_source.set_tasks(user_id, done_today(5))
    await clear_world(adventure, user_id, 1)

    level = await adventure.complete_node(user_id, 1, "level_1")
    boss = await adventure.complete_node(user_id, 1, "level_4")

    assert level.already_completed is True
    assert level.world_completed is False
    assert boss.already_completed is True
    assert boss.world_completed is True


# ============================================================================
# Degradation
# ============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
async def test_xp_outage_defers_credit(catalog, store, task_source, user_id):
    """Completion commits while the XP service is down; the credit is delivered later, once."""
    xp = SwitchableXp()
    adventure = AdventureEngine(catalog, store, task_source, xp, upstream_timeout=1.0, timezone="UTC")
    task_source.set_tasks(user_id, done_today(1))
    await adventure.get_map(user_id)

    xp.online = False
    check = await adventure.complete_level(user_id, 1, "level_1")
    assert check.completion.credit_pending is True
    assert check.completion.progress["levels_completed"] == 1
    assert len(await store.pending_credits(user_id)) == 1

    xp.online = True
    assert await adventure.retry_pending_credits(user_id) == {"attempted": 1, "credited": 1, "pending": 0}
    assert await adventure.retry_pending_credits(user_id) == {"attempted": 0, "credited": 0, "pending": 0}
    assert len(xp.inner.credits) == 1


@pytest.mark.integration
@pytest.mark.asyncio
async def test_pending_credit_retried_on_next_completion(catalog, store, task_source, user_id):
    xp = SwitchableXp()
    adventure = AdventureEngine(catalog, store, task_source, xp, upstream_timeout=1.0, timezone="UTC")
    task_source.set_tasks(user_id, done_today(1))
    await adventure.get_map(user_id)

    xp.online = False
    await adventure.complete_level(user_id, 1, "level_1")
    xp.online = True
    await adventure.complete_level(user_id, 1, "level_2")

    assert [c[3] for c in xp.inner.credits] == [f"{user_id}:1:level_1", f"{user_id}:1:level_2"]
    assert await store.pending_credits(user_id) == []


@pytest.mark.integration
@pytest.mark.asyncio
async def test_inline_credit_retry_stops_at_first_failure(catalog, store, task_source, user_id):
    """A down XP service costs one retry per request, however many credits are pending."""
    xp = SwitchableXp()
    adventure = AdventureEngine(catalog, store, task_source, xp, upstream_timeout=1.0, timezone="UTC")
    task_source.set_tasks(user_id, done_today(5))
    await adventure.get_map(user_id)

    xp.online = False
    for key in ("level_1", "level_2"):
        await adventure.complete_level(user_id, 1, key)
    assert len(await store.pending_credits(user_id)) == 2
    xp.attempts = 0

    check = await adventure.complete_level(user_id, 1, "level_3")

    assert check.completion.credit_pending is True
    # one inline retry, then the new credit
    assert xp.attempts == 2
    assert len(await store.pending_credits(user_id)) == 3
    assert await adventure.retry_pending_credits(user_id, stop_on_failure=True) == {
        "attempted": 1,
        "credited": 0,
        "pending": 3,
    }
    assert await adventure.retry_pending_credits(user_id) == {"attempted": 3, "credited": 0, "pending": 3}


@pytest.mark.integration
@pytest.mark.asyncio
async def test_task_outage_never_completes(adventure, task_source, user_id, monkeypatch):
    """Without any task data a node cannot be completed."""

    async def down(uid):
        raise UpstreamUnavailable("task source offline")

    monkeypatch.setattr(task_source, "fetch_snapshot", down)
    view = await adventure.get_map(user_id)
    assert view["path"]["total_levels"] == 4

    with pytest.raises(ObjectiveUnmet) as exc_info:
        await adventure.complete_level(user_id, 1, "level_1")
    assert exc_info.value.evaluation.snapshot_degraded is True
    assert (await adventure.store.get_progress(user_id, 1)).levels_completed == 0


# ============================================================================
# Reset
# ============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
async def test_reset_user_starts_over(adventure, task_source, user_id):
    task_source.set_tasks(user_id, done_today(5))
    await clear_world(adventure, user_id, 1)

    assert await adventure.reset_user(user_id) > 0

    view = await adventure.get_map(user_id)
    assert view["current_world"] == 1
    assert view["progress"]["levels_completed"] == 0
