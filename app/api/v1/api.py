from fastapi import APIRouter
from app.api.v1.endpoints import gmail_sync

api_router = APIRouter(prefix="/api/v1")

# Include all endpoint routers
api_router.include_router(gmail_sync.router)
