from fastapi import APIRouter
from app.api.v1 import slots, appointments, maintenance

api_router = APIRouter()

api_router.include_router(slots.router, prefix="/slots", tags=["slots"])
api_router.include_router(appointments.router, prefix="/appointments", tags=["appointments"])
api_router.include_router(maintenance.router, prefix="/maintenance", tags=["maintenance"])
