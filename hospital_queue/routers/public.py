from fastapi import APIRouter, Depends

from .. import schemas
from ..dependencies import get_engine
from ..engine import QueueEngine

router = APIRouter(
    prefix="/public",
    tags=["Public Board"],
)


@router.get("/board", response_model=schemas.PublicBoard)
def public_board(engine: QueueEngine = Depends(get_engine)):
    """Waiting-hall display: every doctor's current token and the diagnostic counters."""
    return engine.public_board()
