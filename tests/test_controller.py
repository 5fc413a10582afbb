import asyncio

import pytest

from luckydraw import (
    DrawValidationError, FinalizationError, FinalizeStatus, InvalidTransitionError,
    LeaseNotHeldError, Phase, SessionBusyError,
)


def ids(entries):
    return [e.participant_id for e in entries]


async def wait_for_phase(controller, phase, attempts=100):
    for _ in range(attempts):
        if controller.view.phase == phase:
            return True
        await asyncio.sleep(0.02)
    return False


async def test_twelve_participants_quota_three_full_session(make_controller, seed, repository, channel):
    await seed.participants(12)
    prize = await seed.prize(quota=3)
    primary = make_controller("primary")

    committed = await primary.commit(prize.id)
    assert committed.phase == Phase.COMMITTED
    assert committed.session_id.startswith(f"admin-{prize.id}-")
    assert len(committed.predetermined_winners) == 3
    assert committed.current_winners == []
    assert committed.final_winners == []
    assert len(committed.participants_snapshot) == 12
    drawn = ids(committed.predetermined_winners)

    spinning = await primary.start_spin()
    assert spinning.phase == Phase.SPINNING
    assert spinning.should_start_spinning

    result = await primary.drain()
    assert result.status == FinalizeStatus.SUCCESS
    assert result.winners_added == 3

    state = await channel.snapshot()
    assert state.phase == Phase.REVEALED
    assert ids(state.current_winners) == drawn
    assert ids(state.final_winners) == drawn
    assert state.show_winner_display
    assert state.processed_by_other_controller
    assert not state.should_start_spinning
    assert state.selected_prize_id is None
    assert state.selected_prize_name == prize.name

    persisted = await repository.winners_for_session(committed.session_id)
    assert sorted(w.participant_id for w in persisted) == sorted(drawn)
    assert (await repository.get("prizes", prize.id)).remaining_quota == 0
    assert len(await repository.eligible_participants()) == 9
    assert not await primary.lease.is_held()
    assert primary.advisory.is_processed(committed.session_id)


async def test_vip_one_tap_draw_goes_straight_to_spinning(make_controller, seed):
    await seed.participants(6)
    prize = await seed.prize(quota=2)
    vip = make_controller("vip")

    session = await vip.commit(prize.id, spin=True)

    assert session.phase == Phase.SPINNING
    assert session.session_id.startswith("vip-")
    assert (await vip.drain()).status == FinalizeStatus.SUCCESS


async def test_commit_refused_while_other_controller_owns_the_session(make_controller, seed, channel):
    await seed.participants(12)
    vip = make_controller("vip", spin_duration=10)
    primary = make_controller("primary")

    await vip.commit(spin=True)
    version = (await channel.snapshot()).version

    with pytest.raises(SessionBusyError):
        await primary.commit()
    with pytest.raises(SessionBusyError):
        await primary.clear()

    assert (await channel.snapshot()).version == version
    status = await primary.status()
    assert status.other_controller_active
    assert status.other_controller_role == "vip"
    assert status.shared_phase == "spinning"


async def test_next_session_draws_only_from_remaining_pool(make_controller, seed):
    await seed.participants(12)
    vip = make_controller("vip")
    primary = make_controller("primary")

    first = await vip.commit(spin=True)
    await vip.drain()
    second = await primary.commit(spin=True)
    await primary.drain()

    assert len(first.predetermined_winners) == 5
    assert len(second.predetermined_winners) == 5
    assert not set(ids(first.predetermined_winners)) & set(ids(second.predetermined_winners))


async def test_validation_failures_write_nothing(make_controller, seed, repository, channel):
    primary = make_controller("primary")

    with pytest.raises(DrawValidationError):
        await primary.commit()

    await seed.participants(4)
    prize = await seed.prize(quota=1)
    await repository.update("prizes", prize.id, {"remaining_quota": 0})

    with pytest.raises(DrawValidationError):
        await primary.commit(prize.id)
    with pytest.raises(DrawValidationError):
        await primary.commit("no-such-prize")

    assert (await channel.snapshot()).version == 0
    assert await primary.lease.holder() is None
    assert primary.phase == Phase.IDLE


async def test_transitions_out_of_order_are_rejected(make_controller, seed):
    await seed.participants(3)
    primary = make_controller("primary", spin_duration=10)

    with pytest.raises(InvalidTransitionError):
        await primary.start_spin()
    with pytest.raises(InvalidTransitionError):
        await primary.stop()

    await primary.commit()
    with pytest.raises(InvalidTransitionError):
        await primary.stop()
    with pytest.raises(InvalidTransitionError):
        await primary.commit()


async def test_explicit_stop_reveals_the_committed_winners(make_controller, seed, channel):
    await seed.participants(8)
    prize = await seed.prize(quota=4)
    primary = make_controller("primary", spin_duration=10)

    committed = await primary.commit(prize.id, spin=True)
    slowdown = await primary.stop()

    assert slowdown.phase == Phase.SLOWDOWN
    assert slowdown.should_start_slowdown
    assert ids(slowdown.predetermined_winners) == ids(committed.predetermined_winners)

    assert (await primary.drain()).status == FinalizeStatus.SUCCESS
    assert ids((await channel.snapshot()).current_winners) == ids(committed.predetermined_winners)


async def test_clear_after_reveal_keeps_winners_and_quota(make_controller, seed, repository):
    await seed.participants(3)
    prize = await seed.prize(quota=5)
    primary = make_controller("primary")
    await primary.commit(prize.id)
    await primary.start_spin()
    await primary.drain()
    assert (await repository.get("prizes", prize.id)).remaining_quota == 2

    cleared = await primary.clear()

    assert cleared.phase == Phase.IDLE
    assert cleared.session_id is None
    assert cleared.predetermined_winners == []
    assert cleared.current_winners == []
    assert cleared.participants_snapshot == []
    assert not cleared.show_winner_display
    assert not cleared.processed_by_other_controller
    assert cleared.selected_prize_id == prize.id
    assert len(await repository.list_records("winners")) == 3
    assert (await repository.get("prizes", prize.id)).remaining_quota == 2
    assert not primary.advisory.session_processed
    assert primary.phase == Phase.IDLE


async def test_clear_cancels_pending_dwell_timers(make_controller, seed, repository, channel):
    await seed.participants(6)
    primary = make_controller("primary", spin_duration=0.05)

    await primary.commit(spin=True)
    await primary.clear()
    await asyncio.sleep(0.2)

    assert (await channel.snapshot()).phase == Phase.IDLE
    assert await repository.list_records("winners") == []
    assert primary.phase == Phase.IDLE
    assert await primary.lease.holder() is None


async def test_follower_does_not_finalize_while_owner_holds_lease(make_controller, seed, repository):
    await seed.participants(12)
    prize = await seed.prize(quota=3)
    vip = make_controller("vip", spin_duration=10, slowdown_duration=0.2)
    primary = make_controller("primary")

    await vip.commit(prize.id, spin=True)
    await vip.stop()
    followed = await primary.adopt()
    assert followed.phase == Phase.SLOWDOWN

    assert await primary.reveal() is None
    assert primary.phase == Phase.REVEALED
    assert primary.last_result is None

    assert (await vip.drain()).status == FinalizeStatus.SUCCESS
    assert len(await repository.list_records("winners")) == 3


async def test_processed_flag_stops_a_second_finalize(make_controller, seed, repository):
    await seed.participants(12)
    prize = await seed.prize(quota=3)
    vip = make_controller("vip", spin_duration=10, slowdown_duration=0.2)
    primary = make_controller("primary")

    await vip.commit(prize.id, spin=True)
    await vip.stop()
    await primary.adopt()
    await vip.drain()

    assert await primary.reveal() is None
    assert primary.last_result is None
    assert ids(primary.session.current_winners) == ids(vip.session.current_winners)
    assert primary.advisory.is_processed(vip.session_id)
    assert len(await repository.list_records("winners")) == 3


async def test_expired_lease_lets_the_other_controller_take_over(make_controller, seed):
    await seed.participants(12)
    vip = make_controller("vip", lease_ttl=0.1, lease_heartbeat=10)
    await vip.commit()

    await asyncio.sleep(0.25)
    primary = make_controller("primary")
    session = await primary.commit()

    assert session.owner_id == primary.controller_id
    with pytest.raises(LeaseNotHeldError):
        await vip.start_spin()


async def test_finalize_failure_keeps_slowdown_and_surfaces_error(make_controller, seed, repository, channel):
    await seed.participants(6)
    prize = await seed.prize(quota=2)
    primary = make_controller("primary", spin_duration=10)

    await primary.commit(prize.id, spin=True)
    await repository.remove("prizes", prize.id)
    await primary.stop()

    with pytest.raises(FinalizationError):
        await primary.drain()

    assert primary.phase == Phase.SLOWDOWN
    assert (await channel.snapshot()).phase == Phase.SLOWDOWN
    assert "no longer exists" in (await primary.status()).last_error
    assert await repository.list_records("winners") == []


async def test_select_prize_publishes_snapshot_and_is_locked_during_draws(make_controller, seed, channel):
    await seed.participants(4)
    prize = await seed.prize(quota=2, name="Smart Watch")
    primary = make_controller("primary", spin_duration=10)

    state = await primary.select_prize(prize.id)
    assert state.selected_prize_name == "Smart Watch"
    assert state.selected_prize_quota == 2

    await primary.commit(spin=True)
    assert (await channel.snapshot()).selected_prize_id == prize.id
    with pytest.raises(SessionBusyError):
        await primary.select_prize(None)


async def test_observer_follows_the_other_controller(make_controller, seed):
    await seed.participants(5)
    vip = make_controller("vip")
    primary = make_controller("primary")
    watcher = asyncio.create_task(primary.observe(block_ms=100))
    try:
        await vip.commit(spin=True)
        await vip.drain()
        assert await wait_for_phase(primary, Phase.REVEALED)
    finally:
        watcher.cancel()
        await asyncio.wait([watcher])

    assert primary.view.session_id == vip.session_id


async def test_clear_after_exhausted_prize_drops_its_label(make_controller, seed):
    await seed.participants(5)
    prize = await seed.prize(quota=2)
    primary = make_controller("primary")
    await primary.commit(prize.id, spin=True)
    await primary.drain()

    cleared = await primary.clear()

    assert cleared.selected_prize_id is None
    assert cleared.selected_prize_name is None
    assert cleared.selected_prize_quota == 0
