"""FastAPI dependencies."""

from fastapi import Request

from careslot.scheduling.service import SchedulingService


def get_scheduling_service(request: Request) -> SchedulingService:
    """The service built at startup and stored on ``app.state``."""
    return request.app.state.scheduling_service
