from fastapi import APIRouter

from crosslist_dispatch.api.routes import extension, health, jobs, listings, platform

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(extension.router, prefix="/extension", tags=["agent"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["agent"])
api_router.include_router(platform.router, prefix="/platform", tags=["connections"])
api_router.include_router(listings.router, prefix="/listings", tags=["listings"])
