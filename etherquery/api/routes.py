from fastapi import APIRouter, Depends, HTTPException, Request, WebSocket
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from etherquery.db.database import get_db
from etherquery.db import models
from etherquery.utils.redis_client import EXPORTS_CHANNEL, get_redis

router = APIRouter()

@router.get("/ping")
async def ping():
    return {"message": "pong"}

@router.get("/status")
async def status(request: Request):
    service = getattr(request.app.state, "indexer", None)
    if service is None:
        raise HTTPException(status_code=503, detail="indexer not started")
    return service.status()

@router.get("/cursors")
async def get_cursors(limit: int = 10, db: AsyncSession = Depends(get_db)):
    result = await db.execute(
        select(models.ExportCursor).order_by(models.ExportCursor.id.desc()).limit(limit)
    )
    cursors = result.scalars().all()
    return [
        {"id": c.id, "stream": c.stream, "block_number": c.block_number,
         "block_hash": c.block_hash, "created_at": c.created_at}
        for c in cursors
    ]

@router.websocket("/ws/exports")
async def ws_exports(websocket: WebSocket):
    await websocket.accept()
    redis = await get_redis()
    pubsub = redis.pubsub()
    await pubsub.subscribe(EXPORTS_CHANNEL)

    try:
        async for message in pubsub.listen():
            if message["type"] == "message":
                await websocket.send_text(message["data"])
    finally:
        await pubsub.unsubscribe(EXPORTS_CHANNEL)
        await websocket.close()
