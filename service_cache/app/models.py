"""
Request and response models for the edge cache service.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class APIResponse(BaseModel):
    """Envelope wrapping every response body the service returns."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    data: Optional[Any] = None
    error: Optional[str] = None
    code: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    response_time: Optional[str] = Field(default=None, alias="responseTime")
    cache_status: Optional[str] = Field(default=None, alias="cacheStatus")
    region: Optional[str] = None


def api_response(
    data: Any = None,
    *,
    error: Optional[str] = None,
    code: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    message: Optional[str] = None,
    response_time_ms: Optional[float] = None,
    cache_status: Optional[str] = None,
    region: Optional[str] = None,
) -> Dict[str, Any]:
    """Build a JSON-ready envelope; unset fields are omitted."""
    envelope = APIResponse(
        success=error is None,
        data=data,
        error=error,
        code=code,
        details=details or None,
        message=message,
        response_time=f"{round(response_time_ms)}ms" if response_time_ms is not None else None,
        cache_status=cache_status,
        region=region,
    )
    return envelope.model_dump(mode="json", by_alias=True, exclude_none=True)


class UpdateDataRequest(BaseModel):
    """Body of a data update."""

    data: Any
    ttl: Optional[int] = Field(default=None, ge=1)

    @field_validator("data")
    @classmethod
    def data_required(cls, value: Any) -> Any:
        if value is None:
            raise ValueError("Data is required")
        return value


class CacheCommand(BaseModel):
    """Body of a cache administration request."""

    action: Literal["invalidate", "invalidatePattern", "warmup", "clear"]
    key: Optional[str] = None
    pattern: Optional[str] = None
    keys: List[str] = Field(default_factory=list)
    region: str = "unknown"
