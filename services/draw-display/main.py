import asyncio
import os
import sys
from contextlib import asynccontextmanager

if not os.getenv("PYTHONPATH"):
    sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from fastapi import FastAPI

from luckydraw import (
    RedisStreamClient, Settings, DrawStateChannel, DisplayRenderer,
    create_health_router, configure_logging, setup_telemetry, instrument_fastapi,
)

settings = Settings.from_env()

logger = configure_logging("draw-display", settings.log_level)
setup_telemetry("draw-display")

redis_client = RedisStreamClient(settings.redis_url)
channel = DrawStateChannel(redis_client, settings.retry)
renderer = DisplayRenderer(channel, tick_interval=settings.display_tick)

background_tasks = set()


@asynccontextmanager
async def lifespan(app: FastAPI):
    await redis_client.connect()

    task = asyncio.create_task(renderer.run())
    background_tasks.add(task)

    logger.info("Draw display started - following the shared draw state")
    yield

    for task in background_tasks:
        task.cancel()
    await redis_client.close()


app = FastAPI(title="Draw Display Service", lifespan=lifespan)
instrument_fastapi(app)


async def check_ready():
    return await redis_client.ping()


async def describe():
    return {"mode": renderer.view.mode.value, "version": renderer.view.version}

app.include_router(create_health_router(check_ready, "draw-display", describe))


@app.get("/display")
async def display():
    return renderer.view.to_dict()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8020")))
