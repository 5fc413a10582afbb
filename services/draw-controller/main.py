import asyncio
import os
import sys
import uuid
from contextlib import asynccontextmanager

if not os.getenv("PYTHONPATH"):
    sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from luckydraw import (
    RedisStreamClient, Database, Settings, DrawStateChannel, SessionLease, LocalAdvisoryStore,
    Repository, WinnerFinalizer, DrawController, ControllerRole, DrawSession,
    DrawError, DrawValidationError, RecordNotFoundError, TransientError,
    create_health_router, configure_logging, setup_telemetry, instrument_fastapi,
)
from schemas import CommitRequest, SelectPrizeRequest, TransitionResponse

settings = Settings.from_env()
ROLE = ControllerRole(os.getenv("CONTROLLER_ROLE", "primary"))
CONTROLLER_ID = os.getenv("CONTROLLER_ID", f"{ROLE.value}-{uuid.uuid4().hex[:8]}")
SERVICE_NAME = f"draw-controller-{ROLE.value}"

logger = configure_logging(SERVICE_NAME, settings.log_level)
setup_telemetry(SERVICE_NAME, role=ROLE.value, controller_id=CONTROLLER_ID)

db = Database(settings.database_url)
redis_client = RedisStreamClient(settings.redis_url)
channel = DrawStateChannel(redis_client, settings.retry)
repository = Repository(db, redis_client, settings.retry)
controller = DrawController(
    role=ROLE,
    controller_id=CONTROLLER_ID,
    channel=channel,
    repository=repository,
    finalizer=WinnerFinalizer(db, channel, redis_client, settings.retry),
    lease=SessionLease(redis_client, CONTROLLER_ID, ROLE.value, settings.lease_ttl),
    advisory=LocalAdvisoryStore.for_controller(settings.advisory_dir, CONTROLLER_ID),
    settings=settings,
    service_name=SERVICE_NAME,
)

background_tasks = set()


@asynccontextmanager
async def lifespan(app: FastAPI):
    await db.create_tables()
    await redis_client.connect()

    task = asyncio.create_task(controller.observe())
    background_tasks.add(task)

    logger.info(f"Draw controller started as {ROLE.value}", extra={"controller_id": CONTROLLER_ID, "role": ROLE.value})
    yield

    for task in background_tasks:
        task.cancel()
    await controller.close()
    await redis_client.close()
    await db.close()


app = FastAPI(title="Draw Controller Service", lifespan=lifespan)
instrument_fastapi(app)


@app.exception_handler(DrawError)
async def draw_error_handler(request: Request, exc: DrawError):
    if isinstance(exc, DrawValidationError):
        status_code = 422
    elif isinstance(exc, RecordNotFoundError):
        status_code = 404
    elif isinstance(exc, TransientError):
        status_code = 503
    else:
        status_code = 409
    logger.warning(
        f"{request.method} {request.url.path} rejected: {exc}",
        extra={"controller_id": CONTROLLER_ID, "role": ROLE.value, "outcome": type(exc).__name__}
    )
    return JSONResponse({"detail": str(exc), "error": type(exc).__name__}, status_code=status_code)


async def check_ready():
    return await redis_client.ping() and await db.ping()


async def describe():
    return {"role": ROLE.value, "controller_id": CONTROLLER_ID, "phase": controller.phase.value}

app.include_router(create_health_router(check_ready, SERVICE_NAME, describe))


def transition_response(session: DrawSession) -> TransitionResponse:
    return TransitionResponse(
        session_id=session.session_id,
        phase=session.phase.value,
        version=session.version,
        winner_count=len(session.predetermined_winners),
    )


@app.post("/draw/commit", response_model=TransitionResponse)
async def commit(request: CommitRequest):
    session = await controller.commit(request.prize_id, spin=request.spin)
    return transition_response(session)


@app.post("/draw/spin", response_model=TransitionResponse)
async def spin():
    return transition_response(await controller.start_spin())


@app.post("/draw/stop", response_model=TransitionResponse)
async def stop():
    return transition_response(await controller.stop())


@app.post("/draw/clear", response_model=TransitionResponse)
async def clear():
    return transition_response(await controller.clear())


@app.post("/draw/reset", response_model=TransitionResponse)
async def reset():
    """Clear, then rebuild the shared record from defaults (drops the prize selection)."""
    await controller.clear()
    return transition_response(await channel.reset())


@app.post("/draw/adopt", response_model=TransitionResponse)
async def adopt():
    return transition_response(await controller.adopt())


@app.post("/draw/prize")
async def select_prize(request: SelectPrizeRequest):
    session = await controller.select_prize(request.prize_id)
    return {
        "selected_prize_id": session.selected_prize_id,
        "selected_prize_name": session.selected_prize_name,
        "selected_prize_quota": session.selected_prize_quota,
    }


@app.get("/draw/status")
async def status():
    return (await controller.status()).to_dict()


@app.get("/draw/state")
async def state():
    return (await channel.snapshot()).model_dump(mode="json", by_alias=True)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8010")))
