from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import Response

from .. import qr, schemas
from ..dependencies import get_engine
from ..engine import QueueEngine
from ..security import Role, require_role

router = APIRouter(
    prefix="/visits",
    tags=["Visits"],
)


@router.post("", response_model=schemas.RegistrationOut, status_code=status.HTTP_201_CREATED,
             dependencies=[Depends(require_role([Role.ADMIN, Role.RECEPTIONIST]))])
def register_visit(payload: schemas.VisitCreate, engine: QueueEngine = Depends(get_engine)):
    """Issue the next token for the doctor and put the visit in the OPD queue."""
    return engine.register_visit(
        payload.patient_id, payload.doctor_id,
        is_emergency=payload.is_emergency, is_protected=payload.is_protected,
    )


@router.get("/lookup/{external_ref}", response_model=schemas.VisitLookupOut)
def lookup_visit(
    external_ref: str,
    x_visit_password: Optional[str] = Header(default=None),
    engine: QueueEngine = Depends(get_engine),
):
    """
    Patient-facing status page behind the QR code. Protected visits need the
    patient's date of birth (YYYY-MM-DD) in the ``X-Visit-Password`` header.
    """
    return engine.lookup_visit(external_ref, x_visit_password)


@router.get(
    "/{external_ref}/qr",
    response_class=Response,
    responses={200: {"content": {"image/png": {}}, "description": "Visit QR code"}},
    dependencies=[Depends(require_role([Role.ADMIN, Role.RECEPTIONIST]))],
)
def visit_qr(external_ref: str, request: Request, engine: QueueEngine = Depends(get_engine)):
    visit = engine.get_visit(external_ref)
    png = qr.visit_qr_png(str(request.base_url), visit.external_ref)
    return Response(content=png, media_type="image/png")
