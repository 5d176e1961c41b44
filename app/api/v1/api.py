from fastapi import APIRouter
from app.api.v1.routes.public import router as public_router
from app.api.v1.routes.payments import router as payments_router

api_router = APIRouter(prefix="/api")
api_router.include_router(public_router)
api_router.include_router(payments_router)
