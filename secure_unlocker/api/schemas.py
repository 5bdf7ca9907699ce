"""
Pydantic schemas for FastAPI endpoints
"""
from typing import Optional

from pydantic import BaseModel, Field


class MountRequest(BaseModel):
    """Body of POST /mount/{name}"""
    password: Optional[str] = Field(None, description="Unlock secret for the volume")


class SuccessResponse(BaseModel):
    """Mount/unmount accepted"""
    success: bool = True


class HealthResponse(BaseModel):
    status: str = "ok"


class VolumeStatusResponse(BaseModel):
    """Detailed state of one volume"""
    name: str
    state: str = Field(..., description="unmounted, starting, awaiting-secret, unlocking, mounted, stopping or failed")
    mounted: bool


class ErrorResponse(BaseModel):
    """Error body returned for every failed request"""
    error: str
    error_id: Optional[str] = None
