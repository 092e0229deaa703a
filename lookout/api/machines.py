"""Registry endpoints (read-only view plus selection and lifecycle actions)."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from lookout.core.engine import PresenceEngine
from lookout.errors import FetchFailure
from lookout.models.machine import Machine

logger = logging.getLogger(__name__)

router = APIRouter()


class SelectionRequest(BaseModel):
    """Machine to select; null clears the selection."""
    machineId: Optional[str] = None


class ArchivedFilterRequest(BaseModel):
    showArchived: bool


class AdoptRequest(BaseModel):
    displayName: Optional[str] = None
    options: dict = {}


class DisplayNameRequest(BaseModel):
    """New display name; null clears it."""
    displayName: Optional[str] = None


def get_engine(request: Request) -> PresenceEngine:
    return request.app.state.engine


def _serialize(engine: PresenceEngine, machines: List[Machine]) -> List[dict]:
    return [
        {**machine.to_dict(), "label": machine.label, "statusText": engine.status_text(machine)}
        for machine in machines
    ]


@router.get("")
async def list_machines(engine: PresenceEngine = Depends(get_engine)):
    """Current registry partitioned into buckets."""
    buckets = engine.buckets
    selected = engine.selected
    return {
        "active": _serialize(engine, buckets.active),
        "pending": _serialize(engine, buckets.pending),
        "archived": _serialize(engine, buckets.archived),
        "selectedId": selected.id if selected else None,
        "showArchived": engine.reconciler.show_archived,
        "connected": engine.transport.is_connected,
    }


@router.get("/selected")
async def get_selected(engine: PresenceEngine = Depends(get_engine)):
    selected = engine.selected
    if selected is None:
        raise HTTPException(status_code=404, detail="No machine selected")
    return _serialize(engine, [selected])[0]


@router.put("/selected")
async def select_machine(body: SelectionRequest, engine: PresenceEngine = Depends(get_engine)):
    if not engine.select_machine(body.machineId):
        raise HTTPException(status_code=404, detail="Machine not found in active set")
    selected = engine.selected
    return {"selectedId": selected.id if selected else None}


@router.put("/show-archived")
async def set_show_archived(body: ArchivedFilterRequest, engine: PresenceEngine = Depends(get_engine)):
    engine.set_show_archived(body.showArchived)
    return {"showArchived": engine.reconciler.show_archived}


@router.post("/{machine_id}/adopt")
async def adopt_machine(machine_id: str, body: AdoptRequest, engine: PresenceEngine = Depends(get_engine)):
    try:
        return await engine.adopt(machine_id, display_name=body.displayName, options=body.options)
    except FetchFailure as e:
        logger.error(f"Adopt failed for {machine_id}: {e}")
        raise HTTPException(status_code=502, detail=str(e))


@router.post("/{machine_id}/archive")
async def archive_machine(machine_id: str, engine: PresenceEngine = Depends(get_engine)):
    try:
        return await engine.archive(machine_id)
    except FetchFailure as e:
        logger.error(f"Archive failed for {machine_id}: {e}")
        raise HTTPException(status_code=502, detail=str(e))


@router.post("/{machine_id}/unarchive")
async def unarchive_machine(machine_id: str, engine: PresenceEngine = Depends(get_engine)):
    try:
        return await engine.unarchive(machine_id)
    except FetchFailure as e:
        logger.error(f"Unarchive failed for {machine_id}: {e}")
        raise HTTPException(status_code=502, detail=str(e))


@router.patch("/{machine_id}/display-name")
async def rename_machine(machine_id: str, body: DisplayNameRequest, engine: PresenceEngine = Depends(get_engine)):
    try:
        return await engine.rename(machine_id, body.displayName)
    except FetchFailure as e:
        logger.error(f"Rename failed for {machine_id}: {e}")
        raise HTTPException(status_code=502, detail=str(e))
