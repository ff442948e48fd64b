from fastapi import APIRouter
from crm_segments.api.v2 import ai_segments

api_router = APIRouter()

api_router.include_router(ai_segments.router, prefix="/events", tags=["crm-ai-segments"])
