"""
Volume control API endpoints
"""
import json
import logging
from typing import Dict

import pydantic
from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool

from secure_unlocker.api.rate_limiting import LimitClass
from secure_unlocker.api.schemas import (
    HealthResponse,
    MountRequest,
    SuccessResponse,
    VolumeStatusResponse,
)
from secure_unlocker.api.signed_auth import (
    AuthContext,
    require_signed_mount_request,
    require_signed_request,
)
from secure_unlocker.core.errors import OperationalFault, ValidationError
from secure_unlocker.core.volumes.models import VolumeState
from secure_unlocker.core.volumes.orchestrator import MountOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["volumes"])


def get_orchestrator(request: Request) -> MountOrchestrator:
    return request.app.state.orchestrator


async def _read_mount_request(request: Request) -> MountRequest:
    body = await request.body()
    if not body.strip():
        return MountRequest()
    try:
        return MountRequest.model_validate(json.loads(body))
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Request body must be valid JSON")
    except pydantic.ValidationError:
        raise ValidationError("Request body must be an object with a string 'password'")


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint (no auth required)"""
    return HealthResponse()


@router.get("/list", response_model=Dict[str, str])
async def list_volumes(
    auth: AuthContext = Depends(require_signed_request),
    orchestrator: MountOrchestrator = Depends(get_orchestrator),
):
    """
    List configured volumes.

    **Returns:** mapping of volume name to "mounted" or "unmounted"
    """
    return await run_in_threadpool(orchestrator.list_volumes)


@router.get("/status/{name}", response_model=VolumeStatusResponse)
async def volume_status(
    name: str,
    auth: AuthContext = Depends(require_signed_request),
    orchestrator: MountOrchestrator = Depends(get_orchestrator),
):
    """Detailed lifecycle state of one volume (shows wrong-secret retries as awaiting-secret)."""
    state = await run_in_threadpool(orchestrator.status, name)
    return VolumeStatusResponse(name=name, state=state.value, mounted=state is VolumeState.MOUNTED)


@router.post("/mount/{name}", response_model=SuccessResponse)
async def mount_volume(
    name: str,
    request: Request,
    auth: AuthContext = Depends(require_signed_mount_request),
    orchestrator: MountOrchestrator = Depends(get_orchestrator),
):
    """
    Start the volume's unlock worker and deliver the password to it.

    Success means the secret was delivered; whether it unlocked the volume
    shows up in /list and /status afterwards.
    """
    payload = await _read_mount_request(request)
    try:
        await run_in_threadpool(orchestrator.mount, name, payload.password or "")
    except OperationalFault:
        request.app.state.rate_limiter.record_failure(auth.client, LimitClass.MOUNT)
        raise
    return SuccessResponse()


@router.post("/unmount/{name}", response_model=SuccessResponse)
async def unmount_volume(
    name: str,
    request: Request,
    auth: AuthContext = Depends(require_signed_mount_request),
    orchestrator: MountOrchestrator = Depends(get_orchestrator),
):
    """Stop the volume's worker, unmounting and closing the volume."""
    try:
        await run_in_threadpool(orchestrator.unmount, name)
    except OperationalFault:
        request.app.state.rate_limiter.record_failure(auth.client, LimitClass.MOUNT)
        raise
    return SuccessResponse()
