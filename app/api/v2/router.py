from fastapi import APIRouter
from app.api.v2 import segments

api_router = APIRouter()

# Include all v2 routers
api_router.include_router(segments.router, prefix="/segments", tags=["segments"])
