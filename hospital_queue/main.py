import logging
import logging.config
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI

from . import database
from .config import settings
from .engine import QueueEngine
from .errors import QueueError, queue_error_handler
from .events import Broadcaster
from .monitor import InactivityMonitor
from .routers import admin, diagnostics, live, opd, public, visits

logger = logging.getLogger(__name__)


def create_app(bind=None, broadcaster: Optional[Broadcaster] = None,
               monitor_enabled: Optional[bool] = None) -> FastAPI:
    """
    Wire the engine, broadcaster and inactivity monitor into a FastAPI app.
    Tests pass their own ``bind`` (SQLAlchemy engine) and usually switch the
    monitor off.
    """
    bind = bind if bind is not None else database.engine
    session_factory = database.make_session_factory(bind)
    broadcaster = broadcaster or Broadcaster()
    if monitor_enabled is None:
        monitor_enabled = settings.INACTIVITY_MONITOR_ENABLED

    # =================================================================
    # SETUP & LIFESPAN
    # =================================================================

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.config.dictConfig(settings.LOGGING_CONFIG)
        logger.info("Hospital queue engine starting...")
        database.init_db(bind)
        if monitor_enabled:
            app.state.monitor.start()
        yield
        await app.state.monitor.stop()
        logger.info("Hospital queue engine shutting down")

    app = FastAPI(
        title="Hospital Queue Engine",
        description="OPD and diagnostic queue orchestration with live updates",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.state.broadcaster = broadcaster
    app.state.engine = QueueEngine(session_factory, broadcaster)
    app.state.monitor = InactivityMonitor(session_factory, broadcaster)

    app.add_exception_handler(QueueError, queue_error_handler)

    app.include_router(visits.router)
    app.include_router(opd.router)
    app.include_router(diagnostics.router)
    app.include_router(admin.router)
    app.include_router(public.router)
    app.include_router(live.router)

    @app.get("/", tags=["General"])
    def root():
        return {"message": "Hospital queue engine is running. See /docs for the API."}

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("hospital_queue.main:app", host="127.0.0.1", port=8000, reload=True)
