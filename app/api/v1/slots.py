from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query

from app.api.deps import Actor, get_slot_store, require_roles
from app.db.models import ActorRole
from app.schemas.slot import (
    BookableSlotsResponse,
    BulkDeleteResponse,
    SlotCreate,
    SlotGenerateRequest,
    SlotResponse,
    SlotUpdate,
)
from app.services.slot_store import SlotStore

router = APIRouter()

manage_slots = require_roles(ActorRole.PROVIDER, ActorRole.ADMIN)

def ensure_own_schedule(provider_id: UUID, actor: Actor):
    if actor.role is ActorRole.PROVIDER and actor.id != provider_id:
        raise HTTPException(status_code=403, detail="Providers can only manage their own slots")

@router.post("/providers/{provider_id}/generate", response_model=List[SlotResponse])
async def generate_slots(
    provider_id: UUID,
    request: SlotGenerateRequest,
    store: SlotStore = Depends(get_slot_store),
    actor: Actor = Depends(manage_slots),
):
    ensure_own_schedule(provider_id, actor)
    return await store.generate(
        provider_id,
        request.from_date,
        request.horizon_days,
        request.daily_times,
        default_duration=request.duration_minutes,
        fee_range=request.fee_range,
        consultation_mode=request.consultation_mode,
    )

@router.post("/providers/{provider_id}", response_model=SlotResponse)
async def create_slot(
    provider_id: UUID,
    request: SlotCreate,
    store: SlotStore = Depends(get_slot_store),
    actor: Actor = Depends(manage_slots),
):
    ensure_own_schedule(provider_id, actor)
    return await store.create(provider_id, **request.model_dump())

@router.get("/providers/{provider_id}/bookable", response_model=BookableSlotsResponse)
async def list_bookable_slots(
    provider_id: UUID,
    from_time: Optional[datetime] = None,
    to_time: Optional[datetime] = None,
    limit: int = Query(default=50, gt=0, le=50),
    store: SlotStore = Depends(get_slot_store),
):
    slots = await store.find_bookable(provider_id, from_time, to_time).all(limit=limit)
    return BookableSlotsResponse(
        provider_id=provider_id,
        slots=[SlotResponse.model_validate(slot) for slot in slots],
    )

@router.get("/{slot_id}", response_model=SlotResponse)
async def read_slot(slot_id: UUID, store: SlotStore = Depends(get_slot_store)):
    return await store.get(slot_id)

@router.put("/{slot_id}", response_model=SlotResponse)
async def update_slot(
    slot_id: UUID,
    request: SlotUpdate,
    store: SlotStore = Depends(get_slot_store),
    actor: Actor = Depends(manage_slots),
):
    slot = await store.get(slot_id)
    ensure_own_schedule(slot.provider_id, actor)
    return await store.update(slot_id, **request.model_dump(exclude_unset=True))

@router.delete("/providers/{provider_id}/unbooked", response_model=BulkDeleteResponse)
async def delete_unbooked_slots(
    provider_id: UUID,
    store: SlotStore = Depends(get_slot_store),
    actor: Actor = Depends(manage_slots),
):
    ensure_own_schedule(provider_id, actor)
    deleted = await store.delete_unbooked(provider_id)
    return BulkDeleteResponse(provider_id=provider_id, deleted=deleted)

@router.delete("/{slot_id}")
async def delete_slot(
    slot_id: UUID,
    store: SlotStore = Depends(get_slot_store),
    actor: Actor = Depends(manage_slots),
):
    slot = await store.get(slot_id)
    ensure_own_schedule(slot.provider_id, actor)
    await store.delete(slot_id)
    return {"message": "Slot deleted successfully"}
