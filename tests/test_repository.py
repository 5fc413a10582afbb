import asyncio

import pytest

from luckydraw import DrawValidationError, RecordNotFoundError


async def test_add_and_list_newest_first(repository, seed):
    added = await seed.participants(3)

    records = await repository.list_records("participants")
    oldest_first = await repository.list_records("participants", descending=False)

    assert {r.id for r in records} == {p.id for p in added}
    assert records[0].added_at >= records[-1].added_at
    assert oldest_first[0].added_at <= oldest_first[-1].added_at


async def test_prize_remaining_quota_defaults_to_quota(seed):
    prize = await seed.prize(quota=4)

    assert prize.remaining_quota == 4


async def test_update_changes_only_given_fields(repository, seed):
    [participant] = await seed.participants(1)

    updated = await repository.update("participants", participant.id, {"phone": "+62 811 0000"})

    assert updated.phone == "+62 811 0000"
    assert updated.name == participant.name


async def test_update_missing_record_raises_not_found(repository):
    with pytest.raises(RecordNotFoundError):
        await repository.update("prizes", "missing", {"name": "Ghost"})


async def test_invalid_writes_are_rejected(repository, seed):
    prize = await seed.prize(quota=2)

    with pytest.raises(DrawValidationError):
        await repository.update("prizes", prize.id, {"remaining_quota": 5})
    with pytest.raises(DrawValidationError):
        await repository.add("participants", {"name": "X", "favourite_colour": "red"})
    with pytest.raises(DrawValidationError):
        await repository.list_records("raffles")

    assert (await repository.get("prizes", prize.id)).remaining_quota == 2


async def test_remove_and_remove_many(repository, seed):
    participants = await seed.participants(5)

    assert await repository.remove("participants", participants[0].id)
    assert not await repository.remove("participants", participants[0].id)
    removed = await repository.remove_many("participants", [p.id for p in participants[1:3]] + ["missing"])

    assert removed == 2
    assert len(await repository.list_records("participants")) == 2


async def test_eligible_pool_excludes_winners_by_participant_id(repository):
    first = await repository.add("participants", {"name": "Alex Tan"})
    second = await repository.add("participants", {"name": "Alex Tan"})
    await repository.add("winners", {
        "participant_id": first.id,
        "name": "Alex Tan",
        "draw_session": "admin-open-1",
    })

    eligible = await repository.eligible_participants()

    assert [p.id for p in eligible] == [second.id]


async def test_subscribe_emits_after_each_change(repository, seed):
    await seed.participants(1)
    updates = repository.subscribe("participants", block_ms=100)

    first = await asyncio.wait_for(updates.__anext__(), 2)
    await repository.add("participants", {"name": "Late Arrival"})
    second = await asyncio.wait_for(updates.__anext__(), 2)

    assert len(first) == 1
    assert len(second) == 2
    await updates.aclose()
