from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query

from .. import schemas
from ..dependencies import get_engine
from ..engine import QueueEngine
from ..security import Role, require_role

router = APIRouter(
    prefix="/diagnostics",
    tags=["Diagnostics"],
    dependencies=[Depends(require_role([Role.ADMIN, Role.LAB_TECH]))],
)


@router.get("/queue", response_model=List[schemas.DiagnosticEntryOut])
def get_queue(test_type: str = Query(..., min_length=1), engine: QueueEngine = Depends(get_engine)):
    return engine.list_diagnostic_queue(test_type)


@router.post("/entries/{entry_id}/start", response_model=schemas.DiagnosticEntryOut)
def start_test(entry_id: int, engine: QueueEngine = Depends(get_engine)):
    return engine.start_diagnostic(entry_id)


@router.post("/entries/{entry_id}/complete", response_model=schemas.DiagnosticEntryOut)
def complete_test(
    entry_id: int,
    payload: Optional[schemas.CompleteDiagnosticRequest] = Body(default=None),
    engine: QueueEngine = Depends(get_engine),
):
    """Works from IN_PROGRESS, or straight from WAITING for tests done in one step."""
    return engine.complete_diagnostic(entry_id, result=payload.result if payload else None)


@router.post("/entries/{entry_id}/not-available", response_model=schemas.DiagnosticEntryOut)
def mark_not_available(entry_id: int, engine: QueueEngine = Depends(get_engine)):
    return engine.mark_diagnostic_not_available(entry_id)


@router.post("/entries/{entry_id}/reactivate", response_model=schemas.DiagnosticEntryOut)
def reactivate(entry_id: int, engine: QueueEngine = Depends(get_engine)):
    return engine.reactivate_diagnostic(entry_id)
