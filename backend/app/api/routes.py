from fastapi import APIRouter

from app.api.realtime import router as realtime_router
from app.api.rooms import router as rooms_router
from app.api.users import router as users_router

router = APIRouter()

router.include_router(realtime_router)
router.include_router(users_router)
router.include_router(rooms_router)
