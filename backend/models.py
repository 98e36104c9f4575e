"""
StudySpark Scheduling Backend - Pydantic Models (v2 syntax)
"""

from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any, Annotated
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


Hour = Annotated[int, Field(ge=0, le=23)]
UnitScore = Annotated[float, Field(ge=0.0, le=1.0)]


# ============================================
# ENUMS
# ============================================

class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TaskType(str, Enum):
    ACADEMIC = "academic"
    PERSONAL = "personal"


class RecurrenceRule(str, Enum):
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class StudyTimePreference(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    NIGHT = "night"


class SessionLengthPreference(str, Enum):
    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"


class DifficultyComfort(str, Enum):
    EASY = "easy"
    MODERATE = "moderate"
    CHALLENGING = "challenging"


class BreakFrequency(str, Enum):
    FREQUENT = "frequent"
    MODERATE = "moderate"
    MINIMAL = "minimal"


class DifficultyTrend(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class AdjustmentType(str, Enum):
    TIME_OPTIMIZATION = "time_optimization"
    CONFLICT_RESOLUTION = "conflict_resolution"
    DIFFICULTY_ADJUSTMENT = "difficulty_adjustment"
    PRODUCTIVITY_OPTIMIZATION = "productivity_optimization"


class Level(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# ============================================
# TASK MODELS
# ============================================

UNRECORDED_IF_NON_POSITIVE = ("estimated_duration", "time_spent", "difficulty_level")


class Task(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    description: Optional[str] = None
    subject: Optional[str] = None
    due_date: Optional[datetime] = None
    priority: Priority = Priority.MEDIUM
    type: TaskType = TaskType.ACADEMIC
    completed: bool = False
    completed_at: Optional[datetime] = None
    estimated_duration: Optional[int] = Field(default=None, ge=1, description="Minutes")
    time_spent: Optional[int] = Field(default=None, ge=0, description="Minutes actually spent")
    difficulty_level: Optional[float] = Field(default=None, ge=1, le=10)
    reminder: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    recurrence_rule: Optional[RecurrenceRule] = None

    @model_validator(mode="before")
    @classmethod
    def _drop_null_defaults(cls, data: Any) -> Any:
        # Database rows carry NULL for columns that have model defaults;
        # zero or negative measurements mean "not recorded"
        if isinstance(data, dict):
            data = {
                k: v for k, v in data.items()
                if v is not None
                and not (k in UNRECORDED_IF_NON_POSITIVE and isinstance(v, (int, float)) and v <= 0)
            }
        return data

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_text(cls, value: Any) -> Any:
        return str(value) if value is not None else value

    @model_validator(mode="after")
    def _completion_timestamp(self) -> "Task":
        # Completed rows without an explicit timestamp were completed at their last update
        if self.completed and self.completed_at is None:
            self.completed_at = self.updated_at or self.created_at
        return self


# ============================================
# CALENDAR MODELS
# ============================================

class CalendarEvent(BaseModel):
    """A fixed block the scheduler must never overlap."""
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    start_time: datetime
    end_time: datetime


class TimetableEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    course_name: str = "Class"
    days_of_week: List[str] = Field(default_factory=list)
    start_time: Optional[str] = None  # HH:MM
    end_time: Optional[str] = None    # HH:MM

    @model_validator(mode="before")
    @classmethod
    def _normalize_row(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = {k: v for k, v in data.items() if v is not None}
            if "id" in data:
                data["id"] = str(data["id"])
            for key in ("start_time", "end_time"):
                if key in data and not isinstance(data[key], str):
                    data[key] = data[key].strftime("%H:%M")
        return data


# ============================================
# PREFERENCE MODELS
# ============================================

DEFAULT_AVAILABLE_HOURS = [9, 10, 11, 14, 15, 16, 17, 18, 19, 20]


class UserPreferences(BaseModel):
    study_time_preference: StudyTimePreference = StudyTimePreference.AFTERNOON
    session_length_preference: SessionLengthPreference = SessionLengthPreference.MEDIUM
    difficulty_comfort: DifficultyComfort = DifficultyComfort.MODERATE
    break_frequency: BreakFrequency = BreakFrequency.MODERATE
    preferred_subjects: List[str] = Field(default_factory=list)
    struggling_subjects: List[str] = Field(default_factory=list)
    study_goals: List[str] = Field(default_factory=list)
    available_study_hours: List[Hour] = Field(default_factory=lambda: list(DEFAULT_AVAILABLE_HOURS))


class PreferenceOverrides(BaseModel):
    """One layer of explicitly-set preferences. Unset fields defer to lower layers."""
    study_time_preference: Optional[StudyTimePreference] = None
    session_length_preference: Optional[SessionLengthPreference] = None
    difficulty_comfort: Optional[DifficultyComfort] = None
    break_frequency: Optional[BreakFrequency] = None
    preferred_subjects: Optional[List[str]] = None
    struggling_subjects: Optional[List[str]] = None
    study_goals: Optional[List[str]] = None
    available_study_hours: Optional[List[Hour]] = None


# ============================================
# PATTERN MODELS
# ============================================

class TimePattern(BaseModel):
    most_productive_hours: List[Hour] = Field(default_factory=list)
    preferred_study_duration: int = Field(default=45, ge=1, description="Minutes")
    average_break_time: int = Field(default=15, ge=0, description="Minutes")
    peak_performance_days: List[str] = Field(default_factory=list)
    consistency_score: UnitScore = 0.0


class DifficultyProfile(BaseModel):
    average_task_difficulty: float = Field(default=5.0, ge=1.0, le=10.0)
    difficulty_trend: DifficultyTrend = DifficultyTrend.STABLE
    subject_difficulty_map: Dict[str, float] = Field(default_factory=dict)
    adaptation_rate: UnitScore = 0.5


class SubjectPerformance(BaseModel):
    completion_rate: UnitScore
    average_time_spent: float = Field(ge=0.0, description="Minutes")
    difficulty_progression: List[float] = Field(default_factory=list)
    performance_score: UnitScore = 0.0


class SubjectInsights(BaseModel):
    preferred_subjects: List[str] = Field(default_factory=list)
    struggling_subjects: List[str] = Field(default_factory=list)
    subject_performance: Dict[str, SubjectPerformance] = Field(default_factory=dict)


class PatternProfile(BaseModel):
    """Per-user behavioral summary derived from preferences and history."""
    user_id: Optional[str] = None
    last_analyzed: Optional[datetime] = None
    time_pattern: TimePattern = Field(default_factory=TimePattern)
    difficulty_profile: DifficultyProfile = Field(default_factory=DifficultyProfile)
    subject_insights: SubjectInsights = Field(default_factory=SubjectInsights)
    total_tasks_analyzed: int = Field(default=0, ge=0)
    data_quality: UnitScore = 0.5


# ============================================
# SCHEDULE MODELS
# ============================================

class ScheduledTaskPlacement(BaseModel):
    task_id: str
    title: str = ""
    subject: Optional[str] = None
    scheduled_start: datetime
    scheduled_end: datetime
    duration: int = Field(gt=0, description="Minutes")
    confidence: UnitScore
    reasoning: str = ""
    adjustment_reason: Optional[str] = None
    estimated_difficulty: Optional[float] = None
    in_productive_hours: bool = False

    @model_validator(mode="after")
    def _window_matches_duration(self) -> "ScheduledTaskPlacement":
        if self.scheduled_end <= self.scheduled_start:
            raise ValueError("scheduled_end must be after scheduled_start")
        span = (self.scheduled_end - self.scheduled_start).total_seconds() / 60
        if abs(span - self.duration) > 1e-6:
            raise ValueError(
                f"duration {self.duration} does not match window of {span:g} minutes"
            )
        return self


class ScheduleAdjustment(BaseModel):
    id: str
    task_id: str
    original_time: datetime
    suggested_time: datetime
    reason: str
    confidence: UnitScore
    priority: Level = Level.MEDIUM
    type: AdjustmentType
    title: str
    description: str
    impact: Level = Level.MEDIUM
    effort: Level = Level.LOW
    suggested_change: Optional[str] = None
    affected_tasks: List[str] = Field(default_factory=list)


class ScheduleMetadata(BaseModel):
    total_tasks: int = 0
    scheduled_tasks: int = 0
    conflicts: int = 0
    efficiency: UnitScore = 0.0
    confidence: UnitScore = 0.0
    generated_at: Optional[datetime] = None


class ScheduleResult(BaseModel):
    schedule: List[ScheduledTaskPlacement] = Field(default_factory=list)
    adjustments: List[ScheduleAdjustment] = Field(default_factory=list)
    metadata: ScheduleMetadata = Field(default_factory=ScheduleMetadata)


class StoredSchedule(BaseModel):
    """A persisted schedule as returned by the schedule store."""
    user_id: str
    schedule: List[ScheduledTaskPlacement] = Field(default_factory=list)
    metadata: ScheduleMetadata = Field(default_factory=ScheduleMetadata)
    created_at: Optional[datetime] = None


# ============================================
# API MODELS
# ============================================

class ScheduleRequest(BaseModel):
    preferences: Optional[PreferenceOverrides] = None
    existing_events: List[CalendarEvent] = Field(default_factory=list)
    schedule_horizon: Optional[int] = Field(default=None, ge=1, le=30, description="Days to schedule ahead")
    force_refresh: bool = False


class ResponseMetadata(ScheduleMetadata):
    patterns_used: Optional[datetime] = None
    data_quality: UnitScore = 0.5
    schedule_horizon: int = 7
    calendar_events_considered: int = 0


class ScheduleResponse(BaseModel):
    success: bool = True
    schedule: List[ScheduledTaskPlacement]
    adjustments: List[ScheduleAdjustment]
    metadata: ResponseMetadata


class CurrentScheduleResponse(BaseModel):
    success: bool = True
    current_schedule: Optional[StoredSchedule] = None
    schedule_history: Optional[List[StoredSchedule]] = None
    user_patterns: Optional[PatternProfile] = None
    last_updated: Optional[datetime] = None


class TaskProgressUpdate(BaseModel):
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    was_rescheduled: Optional[bool] = None
    reschedule_reason: Optional[str] = None


class SchedulingAnalytics(BaseModel):
    total_scheduled: int = 0
    completed_on_time: int = 0
    average_actual_vs_scheduled: float = 0.0
    most_productive_hours: List[Hour] = Field(default_factory=list)
    reschedule_rate: UnitScore = 0.0


class SubjectScheduleStats(BaseModel):
    completed: int = 0
    total: int = 0
    avg_confidence: float = 0.0


class RecentSchedulingPatterns(BaseModel):
    preferred_start_times: List[Hour] = Field(default_factory=list)
    average_session_length: float = 0.0
    subject_performance: Dict[str, SubjectScheduleStats] = Field(default_factory=dict)


class Recommendation(BaseModel):
    type: str
    message: str
    priority: Level


class AnalyticsResponse(SchedulingAnalytics):
    patterns: RecentSchedulingPatterns = Field(default_factory=RecentSchedulingPatterns)
    recommendations: List[Recommendation] = Field(default_factory=list)


class RefineResponse(BaseModel):
    success: bool = True
    refined: bool
    new_completions: int
    user_patterns: Optional[PatternProfile] = None


class HealthStatus(BaseModel):
    status: str = "healthy"
    version: str = "1.0.0"
    database: str = "connected"
