import random

import pytest
from fakeredis import FakeAsyncRedis, FakeServer

from luckydraw import (
    Database, DrawController, DrawStateChannel, ParticipantSnapshot, Repository,
    RedisStreamClient, RetryPolicy, SessionLease, Settings, WinnerFinalizer,
)
from luckydraw.selection import build_winner_entries


@pytest.fixture
async def redis_client():
    client = FakeAsyncRedis(server=FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def streams(redis_client):
    return RedisStreamClient.from_client(redis_client)


@pytest.fixture
async def db(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'draw.db'}")
    await database.create_tables()
    yield database
    await database.close()


@pytest.fixture
def retry():
    return RetryPolicy(max_attempts=5, base_delay=0.02, max_delay=0.1)


@pytest.fixture
def settings(retry):
    return Settings(
        spin_duration=0.02,
        slowdown_duration=0.02,
        default_draw_count=5,
        lease_ttl=5.0,
        lease_heartbeat=1.0,
        cleanup_delay=0,
        display_tick=0.01,
        retry=retry,
    )


@pytest.fixture
def channel(streams, retry):
    return DrawStateChannel(streams, retry)


@pytest.fixture
def repository(db, streams, retry):
    return Repository(db, streams, retry)


@pytest.fixture
def finalizer(db, channel, streams, retry):
    return WinnerFinalizer(db, channel, streams, retry)


@pytest.fixture
async def make_controller(channel, repository, finalizer, streams, settings):
    created = []

    def factory(role="primary", controller_id=None, seed=7, **overrides):
        controller_id = controller_id or f"{role}-console"
        controller_settings = Settings(**{**settings.__dict__, **overrides})
        controller = DrawController(
            role=role,
            controller_id=controller_id,
            channel=channel,
            repository=repository,
            finalizer=finalizer,
            lease=SessionLease(streams, controller_id, role, controller_settings.lease_ttl),
            settings=controller_settings,
            rng=random.Random(seed),
        )
        created.append(controller)
        return controller

    yield factory

    for controller in created:
        await controller.close()


class Seeder:
    def __init__(self, repository):
        self.repository = repository

    async def participants(self, count, prefix="Guest"):
        return [
            await self.repository.add("participants", {
                "name": f"{prefix} {i:02d} ({1000 + i})",
                "email": f"{prefix.lower()}{i}@example.com",
            })
            for i in range(count)
        ]

    async def prize(self, quota=3, name="Mountain Bike"):
        return await self.repository.add("prizes", {"name": name, "quota": quota, "image": "bike.png"})

    @staticmethod
    def entries(participants, session_id, prize=None):
        return build_winner_entries(
            [ParticipantSnapshot.model_validate(p) for p in participants],
            session_id,
            prize.id if prize else None,
            prize.name if prize else None,
        )


@pytest.fixture
def seed(repository):
    return Seeder(repository)
