from __future__ import annotations

from fastapi import APIRouter

from cadence.web.routes.feed import router as feed_router
from cadence.web.routes.maintenance import router as maintenance_router

router = APIRouter()
router.include_router(feed_router)
router.include_router(maintenance_router)
