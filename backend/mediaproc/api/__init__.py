"""API routes for mediaproc."""

from fastapi import APIRouter

from mediaproc.api import jobs, system, temp_files

api_router = APIRouter()
api_router.include_router(system.router, tags=["system"])
api_router.include_router(jobs.router)
api_router.include_router(temp_files.router)
