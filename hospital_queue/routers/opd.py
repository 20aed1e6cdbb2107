from typing import List, Optional

from fastapi import APIRouter, Body, Depends

from .. import schemas
from ..dependencies import get_engine
from ..engine import QueueEngine
from ..security import Role, require_role

router = APIRouter(
    prefix="/opd",
    tags=["OPD Queue"],
)

staff_only = require_role([Role.ADMIN, Role.DOCTOR])


@router.get("/queue/{doctor_id}", response_model=List[schemas.QueueEntryOut],
            dependencies=[Depends(require_role([Role.ADMIN, Role.DOCTOR, Role.RECEPTIONIST]))])
def get_queue(doctor_id: int, engine: QueueEngine = Depends(get_engine)):
    """Active entries of the doctor, the patient in the room first."""
    return engine.list_queue(doctor_id)


# --- consultation workflow ---

@router.post("/entries/{entry_id}/start", response_model=schemas.QueueEntryOut,
             dependencies=[Depends(staff_only)])
def start_consultation(entry_id: int, engine: QueueEngine = Depends(get_engine)):
    return engine.start_service(entry_id)


@router.post("/entries/{entry_id}/complete", response_model=schemas.QueueEntryOut,
             dependencies=[Depends(staff_only)])
def complete_consultation(
    entry_id: int,
    payload: Optional[schemas.CompleteServiceRequest] = Body(default=None),
    engine: QueueEngine = Depends(get_engine),
):
    """Finish the consultation; diagnosis, prescription and referrals commit together."""
    payload = payload or schemas.CompleteServiceRequest()
    return engine.complete_service(
        entry_id,
        diagnosis=payload.diagnosis,
        medicines=payload.medicines,
        referrals=payload.referrals,
    )


@router.post("/entries/{entry_id}/not-available", response_model=schemas.QueueEntryOut,
             dependencies=[Depends(staff_only)])
def mark_not_available(entry_id: int, engine: QueueEngine = Depends(get_engine)):
    return engine.mark_not_available(entry_id)


@router.post("/entries/{entry_id}/reactivate", response_model=schemas.QueueEntryOut,
             dependencies=[Depends(staff_only)])
def reactivate(entry_id: int, engine: QueueEngine = Depends(get_engine)):
    return engine.reactivate(entry_id)


# --- escalation & doctor status ---

@router.post("/visits/{visit_id}/emergency", response_model=schemas.VisitOut)
def mark_emergency(
    visit_id: int,
    payload: schemas.ReasonRequest,
    user: dict = Depends(staff_only),
    engine: QueueEngine = Depends(get_engine),
):
    return engine.mark_emergency(visit_id, payload.reason, actor=user["username"])


@router.put("/doctors/{doctor_id}/status", response_model=schemas.DoctorOut,
            dependencies=[Depends(staff_only)])
def update_work_status(doctor_id: int, payload: schemas.WorkStatusUpdate,
                       engine: QueueEngine = Depends(get_engine)):
    return engine.set_doctor_work_status(doctor_id, payload.status)
