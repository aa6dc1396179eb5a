from fastapi import APIRouter
from ixyci.api.endpoints import jobs, webhook

api_router = APIRouter()
api_router.include_router(webhook.router, prefix="/github", tags=["github"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
