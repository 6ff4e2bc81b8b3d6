from fastapi import APIRouter

from review_bot.api.routes import health, jobs, webhook

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(webhook.router, prefix="/webhook", tags=["webhook"])
api_router.include_router(jobs.router, tags=["admin"])
