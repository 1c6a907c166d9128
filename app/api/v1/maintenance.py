from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.api.deps import Actor, get_integrity_service, require_roles
from app.core.config import settings
from app.db.models import ActorRole
from app.schemas.appointment import IntegrityReport
from app.services.integrity_service import IntegrityService

router = APIRouter()

admin_only = require_roles(ActorRole.ADMIN)

@router.get("/integrity", response_model=IntegrityReport)
async def integrity_audit(
    service: IntegrityService = Depends(get_integrity_service),
    actor: Actor = Depends(admin_only),
):
    return await service.audit()

@router.post("/purge-stale-slots")
async def purge_stale_slots(
    retention_days: Optional[int] = Query(default=None, ge=0),
    service: IntegrityService = Depends(get_integrity_service),
    actor: Actor = Depends(admin_only),
):
    days = settings.STALE_SLOT_RETENTION_DAYS if retention_days is None else retention_days
    deleted = await service.purge_stale_slots(days)
    return {"deleted": deleted, "retention_days": days}
