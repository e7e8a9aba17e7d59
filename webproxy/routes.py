import logging

from fastapi import APIRouter

from webproxy.vars import BASE_PATH
from .proxy.route import router as proxy_router

router = APIRouter()

logger = logging.getLogger("uvicorn.error")

if BASE_PATH:
    router.prefix = BASE_PATH
    logger.info(f"Using BASE_PATH: {BASE_PATH}")
else:
    logger.info("No BASE_PATH set, using root path")


@router.get("/healthz")
async def healthz():
    return {"status": "ok"}


router.include_router(proxy_router)
