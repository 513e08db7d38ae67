from fastapi import APIRouter

from app.modules.invites import router as invites_router

api_router = APIRouter()

api_router.include_router(invites_router, prefix="/invites", tags=["Invites"])
