import asyncio
import uvicorn
from fastapi import FastAPI
from etherquery.utils.config import settings
from etherquery.utils.logger import setup_logging, get_logger
from etherquery.api import routes
from etherquery.node import build_service, prepare

setup_logging(settings.LOG_LEVEL)
logger = get_logger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json"
)

app.include_router(routes.router, prefix=settings.API_V1_STR)

async def watch_indexer(service):
    try:
        await service.wait()
    except Exception as e:
        logger.error("etherquery service failed", error=str(e))

@app.on_event("startup")
async def startup_event():
    service = build_service(settings)
    await prepare(service)
    await service.start()
    app.state.indexer = service
    app.state.indexer_watch = asyncio.create_task(watch_indexer(service))

@app.on_event("shutdown")
async def shutdown_event():
    service = getattr(app.state, "indexer", None)
    if service is not None:
        await service.stop()

@app.get("/")
async def root():
    return {"message": f"Welcome to {settings.PROJECT_NAME}"}

def serve():
    uvicorn.run(app, host=settings.API_HOST, port=settings.API_PORT, log_config=None)
