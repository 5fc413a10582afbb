import asyncio

from luckydraw import RedisStreamClient


async def test_idle_consumer_leaves_room_for_other_tasks(streams):
    handled = []

    async def handler(payload):
        handled.append(payload)

    worker = asyncio.create_task(streams.consume("draw:idle", "idle-group", "idle-1", handler, block_ms=20))
    try:
        ticks = 0
        for _ in range(5):
            await asyncio.sleep(0.01)
            ticks += 1
        await streams.publish("draw:idle", {"session_id": "vip-p1-1"})
        for _ in range(100):
            if handled:
                break
            await asyncio.sleep(0.01)
    finally:
        worker.cancel()
        await asyncio.wait([worker])

    assert ticks == 5
    assert handled[0]["session_id"] == "vip-p1-1"


async def test_tail_yields_entries_appended_after_the_start(streams):
    await streams.publish("draw:tail", {"n": 0})
    start = await streams.last_id("draw:tail")
    seen = []

    async def follow():
        async for _msg_id, payload in streams.tail("draw:tail", last_id=start, block_ms=20):
            seen.append(payload["n"])
            if len(seen) == 2:
                return

    follower = asyncio.create_task(follow())
    await asyncio.sleep(0.05)
    await streams.publish("draw:tail", {"n": 1})
    await streams.publish("draw:tail", {"n": 2})
    await asyncio.wait_for(follower, timeout=5)

    assert seen == [1, 2]


async def test_wrapped_client_is_left_open(redis_client):
    client = RedisStreamClient.from_client(redis_client)

    await client.close()

    assert await redis_client.ping()
