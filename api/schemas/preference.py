"""
Time Preference Schemas
Pydantic models for patient time buckets and frequency mapping
"""

from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field


class TimeBucketInput(BaseModel):
    """One bucket; omitted fields keep their stored value"""
    label: Optional[str] = None
    default_time: Optional[str] = None
    earliest: Optional[str] = None
    latest: Optional[str] = None
    is_active: Optional[bool] = None


class SpacingInput(BaseModel):
    minimum_hours: float = Field(..., ge=0)
    preferred_hours: float = Field(..., ge=0)


class FrequencyMappingInput(BaseModel):
    preferred_bucket: Optional[str] = None
    fallback_buckets: Optional[List[str]] = None
    buckets: Optional[List[str]] = None
    spacing: Optional[SpacingInput] = None


class PreferencesUpdate(BaseModel):
    time_buckets: Optional[Dict[str, TimeBucketInput]] = None
    frequency_mapping: Optional[Dict[str, FrequencyMappingInput]] = None
    wake_time: Optional[str] = None
    bed_time: Optional[str] = None
    timezone: Optional[str] = None
    recompile_medications: bool = False

    def bucket_changes(self) -> Optional[Dict[str, Dict[str, Any]]]:
        if self.time_buckets is None:
            return None
        return {name: b.model_dump(exclude_none=True) for name, b in self.time_buckets.items()}

    def mapping_changes(self) -> Optional[Dict[str, Dict[str, Any]]]:
        if self.frequency_mapping is None:
            return None
        return {name: m.model_dump(exclude_none=True) for name, m in self.frequency_mapping.items()}


class PreferencesResponse(BaseModel):
    patient_id: str
    time_buckets: Dict[str, Dict[str, Any]]
    frequency_mapping: Dict[str, Dict[str, Any]]
    wake_time: str
    bed_time: str
    timezone: str
    version: int
    warnings: List[Dict[str, Any]] = Field(default_factory=list)
    is_default: bool = False
    recompiled: Optional[int] = None


class CompilePreviewRequest(BaseModel):
    frequency: str
    times: Optional[List[str]] = None
    bucket_overrides: Optional[Dict[str, str]] = None
    buckets: Optional[List[str]] = None


class CompilePreviewResponse(BaseModel):
    times: List[str]
    buckets: List[Optional[str]]
    strategy: str
    warnings: List[Dict[str, Any]] = Field(default_factory=list)


class CurrentBucketResponse(BaseModel):
    patient_id: str
    timezone: str
    local_time: str
    current_bucket: Optional[str] = None
    next_bucket: Optional[str] = None
    next_bucket_time: Optional[str] = None
