from fastapi import APIRouter
from utils import log

from .auctions import router as auctions_router
from .health import router as health_router
from .payments import router as payments_router
from .webhooks import router as webhooks_router

logger = log.get_logger(__name__)

router = APIRouter(prefix="/api")
router.include_router(health_router)
router.include_router(auctions_router)
router.include_router(payments_router)
router.include_router(webhooks_router)
