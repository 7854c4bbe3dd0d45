"""
Adherence Schemas
Pydantic models for adherence rollups and daily summaries
"""

from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import BaseModel, Field


class AdherenceMetricsSchema(BaseModel):
    """Counts and rates for one window; rates are percentages"""
    scheduled: int = 0
    taken: int = 0
    partial: int = 0
    missed: int = 0
    skipped: int = 0
    snoozed: int = 0
    pending: int = 0
    on_time: int = 0
    timing_distribution: Dict[str, int] = Field(default_factory=dict)
    adherence_rate: Optional[float] = None
    on_time_rate: Optional[float] = None
    average_delay_minutes: Optional[float] = None
    longest_streak: int = 0
    current_streak: int = 0
    risk_level: Optional[str] = None
    daily: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


class MedicationAdherence(AdherenceMetricsSchema):
    name: Optional[str] = None
    patterns: List[Dict[str, Any]] = Field(default_factory=list)


class AdherenceWindow(BaseModel):
    start: str
    end: str
    timezone: str


class AdherenceRollupResponse(BaseModel):
    id: str
    patient_id: str
    command_id: Optional[str] = None
    period: str
    window: AdherenceWindow
    overall: AdherenceMetricsSchema
    medications: Dict[str, MedicationAdherence]
    patterns: List[Dict[str, Any]] = Field(default_factory=list)
    risk_level: Optional[str] = None
    computed_at: datetime


class ArchivedEvents(BaseModel):
    total_archived: int
    event_ids: List[str]


class DailySummaryResponse(BaseModel):
    id: str
    patient_id: str
    date: str
    timezone: Optional[str] = None
    total_scheduled: int
    taken: int
    partial: int
    missed: int
    skipped: int
    snoozed: int
    adherence_rate: Optional[float] = None
    on_time_rate: Optional[float] = None
    average_delay_minutes: Optional[float] = None
    medication_breakdown: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    archived_events: ArchivedEvents
    corrections: List[Dict[str, Any]] = Field(default_factory=list)
    created_at: Optional[datetime] = None


class DailySummaryList(BaseModel):
    patient_id: str
    summaries: List[DailySummaryResponse]
    total: int
