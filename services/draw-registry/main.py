import asyncio
import os
import sys
from contextlib import asynccontextmanager
from typing import Optional

if not os.getenv("PYTHONPATH"):
    sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from fastapi import FastAPI, HTTPException, Response

from luckydraw import (
    RedisStreamClient, Database, Settings, Repository, PoolCleaner,
    DrawValidationError, RecordNotFoundError, STREAM_WINNERS_FINALIZED, export_csv,
    create_health_router, configure_logging, setup_telemetry, instrument_fastapi,
)
from luckydraw.schemas import ParticipantRecord, PrizeRecord, WinnerRecord
from schemas import ParticipantCreate, ParticipantUpdate, PrizeCreate, PrizeUpdate, BulkRemoveRequest

settings = Settings.from_env()

logger = configure_logging("draw-registry", settings.log_level)
setup_telemetry("draw-registry")

db = Database(settings.database_url)
redis_client = RedisStreamClient(settings.redis_url)
repository = Repository(db, redis_client, settings.retry)
cleaner = PoolCleaner(repository, settings.cleanup_delay)

background_tasks = set()


@asynccontextmanager
async def lifespan(app: FastAPI):
    await db.create_tables()
    await redis_client.connect()

    task = asyncio.create_task(
        redis_client.consume(
            STREAM_WINNERS_FINALIZED,
            "registry-group",
            os.getenv("CONSUMER_NAME", "registry-1"),
            cleaner.handle_winners_finalized
        )
    )
    background_tasks.add(task)

    logger.info("Draw registry started")
    yield

    for task in background_tasks:
        task.cancel()
    await redis_client.close()
    await db.close()


app = FastAPI(title="Draw Registry Service", lifespan=lifespan)
instrument_fastapi(app)


async def check_ready():
    return await db.ping()

app.include_router(create_health_router(check_ready, "draw-registry"))


async def guarded(operation):
    try:
        return await operation
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except DrawValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))


@app.get("/participants", response_model=list[ParticipantRecord])
async def list_participants(order: str = "added_at", ascending: bool = False):
    records = await guarded(repository.list_records("participants", order, descending=not ascending))
    return [ParticipantRecord.model_validate(r) for r in records]


@app.get("/participants/eligible", response_model=list[ParticipantRecord])
async def eligible_participants():
    return [ParticipantRecord.model_validate(r) for r in await repository.eligible_participants()]


@app.post("/participants", response_model=ParticipantRecord, status_code=201)
async def add_participant(request: ParticipantCreate):
    record = await guarded(repository.add("participants", request.model_dump()))
    return ParticipantRecord.model_validate(record)


@app.patch("/participants/{participant_id}", response_model=ParticipantRecord)
async def update_participant(participant_id: str, request: ParticipantUpdate):
    record = await guarded(
        repository.update("participants", participant_id, request.model_dump(exclude_unset=True))
    )
    return ParticipantRecord.model_validate(record)


@app.delete("/participants/{participant_id}", status_code=204)
async def remove_participant(participant_id: str):
    if not await guarded(repository.remove("participants", participant_id)):
        raise HTTPException(status_code=404, detail="Participant not found")
    return Response(status_code=204)


@app.post("/participants/remove")
async def remove_participants(request: BulkRemoveRequest):
    removed = await guarded(repository.remove_many("participants", request.ids))
    return {"requested": len(request.ids), "removed": removed}


@app.get("/prizes", response_model=list[PrizeRecord])
async def list_prizes():
    return [PrizeRecord.model_validate(r) for r in await repository.list_records("prizes")]


@app.post("/prizes", response_model=PrizeRecord, status_code=201)
async def add_prize(request: PrizeCreate):
    record = await guarded(repository.add("prizes", request.model_dump()))
    return PrizeRecord.model_validate(record)


@app.patch("/prizes/{prize_id}", response_model=PrizeRecord)
async def update_prize(prize_id: str, request: PrizeUpdate):
    record = await guarded(repository.update("prizes", prize_id, request.model_dump(exclude_unset=True)))
    return PrizeRecord.model_validate(record)


@app.delete("/prizes/{prize_id}", status_code=204)
async def remove_prize(prize_id: str):
    if not await guarded(repository.remove("prizes", prize_id)):
        raise HTTPException(status_code=404, detail="Prize not found")
    return Response(status_code=204)


@app.get("/winners", response_model=list[WinnerRecord])
async def list_winners(session_id: Optional[str] = None):
    if session_id:
        records = await repository.winners_for_session(session_id)
    else:
        records = await repository.list_records("winners")
    return [WinnerRecord.model_validate(r) for r in records]


@app.get("/export/winners.csv")
async def export_winners():
    winners = await repository.list_records("winners", descending=False)
    remaining = await repository.eligible_participants()
    # Leading BOM for spreadsheet imports.
    content = "\ufeff" + export_csv(winners, remaining)
    return Response(
        content=content.encode("utf-8"),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": "attachment; filename=winners.csv"},
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8030")))
