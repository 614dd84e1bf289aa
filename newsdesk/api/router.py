from fastapi import APIRouter

from newsdesk.features.attachments.api import router as attachments_router
from newsdesk.features.cleanup.api import router as cleanup_router

api_router = APIRouter()
api_router.include_router(attachments_router)
api_router.include_router(cleanup_router)
