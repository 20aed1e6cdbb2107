from fastapi import APIRouter, Depends

from .. import schemas
from ..dependencies import get_engine
from ..engine import QueueEngine
from ..security import Role, require_role

router = APIRouter(
    prefix="/admin",
    tags=["Admin"],
)

admin_only = require_role([Role.ADMIN])


@router.post("/override", response_model=schemas.QueueEntryOut)
def override_priority(
    payload: schemas.OverrideRequest,
    user: dict = Depends(admin_only),
    engine: QueueEngine = Depends(get_engine),
):
    """Move a visit to the front of its doctor's queue without flagging an emergency."""
    return engine.override_priority(payload.visit_id, payload.reason, actor=user["username"])


@router.put("/doctors/{doctor_id}/delay", response_model=schemas.DoctorOut,
            dependencies=[Depends(admin_only)])
def set_delay_reason(doctor_id: int, payload: schemas.DelayReasonUpdate,
                     engine: QueueEngine = Depends(get_engine)):
    """An empty reason clears the delay."""
    return engine.set_delay_reason(doctor_id, payload.reason)


@router.get("/dashboard", response_model=schemas.AdminDashboard,
            dependencies=[Depends(admin_only)])
def dashboard(engine: QueueEngine = Depends(get_engine)):
    return engine.admin_dashboard()
