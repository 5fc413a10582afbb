import asyncio
import json

import pytest

from luckydraw import DrawValidationError, Phase, VersionConflictError
from luckydraw.channel import STATE_KEY


async def test_missing_record_reads_as_idle_defaults(channel):
    state = await channel.snapshot()

    assert state.version == 0
    assert state.phase == Phase.IDLE
    assert state.session_id is None
    assert state.selected_prize_quota == 0
    assert state.predetermined_winners == []
    assert not state.should_start_spinning
    assert not state.processed_by_other_controller


async def test_publish_merges_fields_and_bumps_version(channel):
    await channel.publish({"selected_prize_name": "Mountain Bike"})
    state = await channel.publish({"selected_prize_quota": 3})

    assert state.version == 2
    assert state.selected_prize_name == "Mountain Bike"
    assert state.selected_prize_quota == 3
    assert state.last_updated is not None


async def test_missing_record_is_recreated_with_the_update(channel, redis_client):
    await channel.publish({"selected_prize_name": "Laptop"})
    await redis_client.delete(STATE_KEY)

    state = await channel.publish({"controller_active": True})

    assert state.controller_active is True
    assert state.selected_prize_name is None
    assert state.phase == Phase.IDLE


async def test_compare_and_swap_rejects_stale_version(channel):
    first = await channel.publish({"selected_prize_name": "Laptop"})
    await channel.publish({"selected_prize_name": "Phone"}, expected_version=first.version)

    with pytest.raises(VersionConflictError) as exc_info:
        await channel.publish({"selected_prize_name": "Tablet"}, expected_version=first.version)

    assert exc_info.value.actual == first.version + 1
    assert (await channel.snapshot()).selected_prize_name == "Phone"


async def test_unknown_and_invalid_fields_are_rejected_before_writing(channel):
    with pytest.raises(DrawValidationError):
        await channel.publish({"winnerNames": ["x"]})
    with pytest.raises(DrawValidationError):
        await channel.publish({"phase": "exploding"})
    with pytest.raises(DrawValidationError):
        await channel.publish({"version": 99})

    assert (await channel.snapshot()).version == 0


async def test_concurrent_writers_do_not_lose_fields(channel):
    await asyncio.gather(
        channel.publish({"selected_prize_name": "Laptop"}),
        channel.publish({"controller_active": True}),
        channel.publish({"selected_prize_quota": 4}),
    )
    state = await channel.snapshot()

    assert state.version == 3
    assert state.selected_prize_name == "Laptop"
    assert state.controller_active is True
    assert state.selected_prize_quota == 4


async def test_reset_restores_defaults_with_increasing_version(channel):
    await channel.publish({"phase": Phase.SPINNING, "session_id": "vip-p1-1"})
    state = await channel.reset()

    assert state.version == 2
    assert state.phase == Phase.IDLE
    assert state.session_id is None


async def test_record_is_stored_with_camel_case_keys(channel, redis_client):
    await channel.publish({"session_id": "admin-p1-1", "processed_by_other_controller": True})
    stored = json.loads(await redis_client.get(STATE_KEY))

    assert stored["sessionId"] == "admin-p1-1"
    assert stored["processedByOtherController"] is True
    assert "participantsSnapshot" in stored


async def test_subscribe_yields_current_state_then_changes(channel):
    await channel.publish({"selected_prize_name": "Laptop"})
    updates = channel.subscribe(block_ms=100)

    first = await asyncio.wait_for(updates.__anext__(), 2)
    assert first.selected_prize_name == "Laptop"

    await channel.publish({"phase": Phase.COMMITTED, "session_id": "vip-p1-1"})
    second = await asyncio.wait_for(updates.__anext__(), 2)
    assert second.phase == Phase.COMMITTED
    assert second.version == first.version + 1

    await updates.aclose()


async def test_subscription_can_restart_without_missing_state(channel):
    updates = channel.subscribe(block_ms=100)
    await asyncio.wait_for(updates.__anext__(), 2)
    await updates.aclose()

    await channel.publish({"phase": Phase.SPINNING, "session_id": "vip-p1-1"})

    restarted = channel.subscribe(block_ms=100)
    state = await asyncio.wait_for(restarted.__anext__(), 2)
    assert state.phase == Phase.SPINNING
    await restarted.aclose()
