from fastapi import APIRouter

from sepal_server.routers.messages import router as messages_router
from sepal_server.routers.runs import router as runs_router
from sepal_server.routers.threads import router as threads_router

router = APIRouter()
router.include_router(threads_router)
router.include_router(messages_router)
router.include_router(runs_router)
