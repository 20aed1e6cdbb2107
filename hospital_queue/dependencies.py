from fastapi import Request

from .engine import QueueEngine


def get_engine(request: Request) -> QueueEngine:
    return request.app.state.engine
