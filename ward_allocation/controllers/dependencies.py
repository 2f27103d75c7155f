"""Shared FastAPI dependency providers for controller layer."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from ward_allocation.repository.data_repository import DataRepository
from ward_allocation.services.workflow_service import ScheduleWorkflowService
from ward_allocation.utils.config import get_settings


def get_repository(request: Request) -> DataRepository:
    repository = getattr(request.app.state, "repository", None)
    if repository is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Repository is not initialized",
        )
    return repository


def get_workflow_service(request: Request) -> ScheduleWorkflowService:
    service = getattr(request.app.state, "workflow_service", None)
    if service is None:
        repository = getattr(request.app.state, "repository", None)
        if repository is not None:
            service = ScheduleWorkflowService(repository=repository, settings=get_settings())
            request.app.state.workflow_service = service
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Schedule workflow service is not initialized",
        )
    return service
