from fastapi import APIRouter
from timecards.api.v1.endpoints import health, timecards

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(timecards.router, prefix="/timecards", tags=["timecards"])
