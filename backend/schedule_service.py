"""
StudySpark Scheduling Backend - Schedule Service
Loads a user's tasks, history, timetable and stored patterns, decides whether
to re-analyze, runs the scheduler and persists the result
"""

from datetime import datetime, timedelta
from typing import Optional, List, Any, Awaitable, Callable
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from config import SchedulingConfig, get_scheduling_config
from database import (
    db, Database, get_pending_tasks, get_completed_history, get_completed_since,
    get_timetable_entries, get_user_patterns, get_user_profile, upsert_user_patterns,
    log_system,
)
from learning_patterns import PatternAnalyzer, MIN_INCREMENTAL_SAMPLES
from logger import get_logger
from models import (
    Task, TimetableEntry, CalendarEvent, UserPreferences, PreferenceOverrides,
    PatternProfile, ScheduleRequest, ScheduleResponse, ResponseMetadata,
    CurrentScheduleResponse, AnalyticsResponse, RefineResponse,
)
from schedule_store import ScheduleStore, generate_recommendations
from scheduler import SmartScheduler, generate_timetable_events

logger = get_logger(__name__)


class DataFetchError(Exception):
    """The primary input (pending tasks) could not be loaded."""


# ============================================
# PREFERENCE RESOLUTION
# ============================================

def infer_preferences(tasks: List[Task]) -> PreferenceOverrides:
    """Subjects of the user's open tasks stand in for unstated preferred subjects."""
    subjects = []
    for task in tasks:
        if task.subject and task.subject not in subjects:
            subjects.append(task.subject)
    return PreferenceOverrides(preferred_subjects=subjects or None)


def merge_overrides(*layers: Optional[PreferenceOverrides]) -> PreferenceOverrides:
    """Combine override layers, later layers winning field by field."""
    merged: dict = {}
    for layer in layers:
        if layer is not None:
            merged.update(layer.model_dump(exclude_none=True))
    return PreferenceOverrides(**merged)


def resolve_preferences(*layers: Optional[PreferenceOverrides]) -> UserPreferences:
    """
    Apply override layers over the defaults, lowest precedence first.

    Only fields a layer explicitly sets replace the value below it.
    """
    values = UserPreferences().model_dump()
    values.update(merge_overrides(*layers).model_dump(exclude_none=True))
    return UserPreferences(**values)


def _parse_overrides(raw: Any, source: str) -> Optional[PreferenceOverrides]:
    if not raw:
        return None
    try:
        return PreferenceOverrides.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"Ignoring invalid preferences from {source}: {e}")
        return None


# ============================================
# SCHEDULE SERVICE
# ============================================

class ScheduleService:
    """One analyze, generate and persist cycle per request."""

    def __init__(
        self,
        database: Database = db,
        store: Optional[ScheduleStore] = None,
        config: Optional[SchedulingConfig] = None,
    ):
        self.db = database
        self.config = config or get_scheduling_config()
        self.tz = ZoneInfo(self.config.timezone)
        self.store = store or ScheduleStore(database, tz=self.tz)

    # ---------- helpers ----------

    def _localize(self, moment: Optional[datetime]) -> Optional[datetime]:
        """Interpret naive values in the scheduling zone; convert aware ones into it."""
        if moment is None:
            return None
        if moment.tzinfo is None:
            return moment.replace(tzinfo=self.tz)
        return moment.astimezone(self.tz)

    def _now(self, now: Optional[datetime]) -> datetime:
        return self._localize(now) if now is not None else datetime.now(self.tz)

    def _to_tasks(self, rows: List[dict], source: str) -> List[Task]:
        tasks = []
        for row in rows:
            try:
                task = Task.model_validate(row)
            except ValidationError as e:
                logger.warning(f"Skipping malformed {source} row {row.get('id')}: {e}")
                continue
            tasks.append(task.model_copy(update={
                "due_date": self._localize(task.due_date),
                "completed_at": self._localize(task.completed_at),
                "created_at": self._localize(task.created_at),
                "updated_at": self._localize(task.updated_at),
            }))
        return tasks

    def _to_timetable(self, rows: List[dict]) -> List[TimetableEntry]:
        entries = []
        for row in rows:
            try:
                entries.append(TimetableEntry.model_validate(row))
            except ValidationError as e:
                logger.warning(f"Skipping malformed timetable row {row.get('id')}: {e}")
        return entries

    def _to_profile(self, row: Optional[dict]) -> Optional[PatternProfile]:
        if not row or not row.get("pattern_data"):
            return None
        try:
            profile = PatternProfile.model_validate(row["pattern_data"])
        except ValidationError as e:
            logger.warning(f"Stored pattern data for {row.get('user_id')} is unreadable: {e}")
            return None
        if profile.last_analyzed is None:
            profile.last_analyzed = row.get("last_analyzed_at")
        return profile

    async def _load_secondary(self, label: str, loader: Callable[[], Awaitable[Any]], default: Any) -> Any:
        try:
            return await loader()
        except Exception as e:
            logger.warning(f"Could not load {label}, continuing without it: {e}")
            return default

    def _is_stale(self, row: Optional[dict], now: datetime) -> bool:
        analyzed_at = self._localize(row.get("last_analyzed_at")) if row else None
        if analyzed_at is None:
            return True
        return now - analyzed_at > timedelta(days=self.config.pattern_stale_days)

    # ---------- generate ----------

    async def generate(self, user_id: str, request: ScheduleRequest, now: Optional[datetime] = None) -> ScheduleResponse:
        """Build, persist and return a fresh schedule for the user."""
        now = self._now(now)
        horizon = min(request.schedule_horizon or self.config.default_horizon_days, self.config.max_horizon_days)

        try:
            task_rows = await get_pending_tasks(user_id, database=self.db)
        except Exception as e:
            logger.error(f"Failed to fetch tasks for {user_id}: {e}")
            raise DataFetchError("Failed to fetch tasks") from e
        tasks = self._to_tasks(task_rows, "task")

        history_rows = await self._load_secondary(
            "task history",
            lambda: get_completed_history(user_id, self.config.history_limit, database=self.db),
            [],
        )
        timetable_rows = await self._load_secondary(
            "timetable", lambda: get_timetable_entries(user_id, database=self.db), []
        )
        pattern_row = await self._load_secondary(
            "stored patterns", lambda: get_user_patterns(user_id, database=self.db), None
        )
        profile_row = await self._load_secondary(
            "user settings", lambda: get_user_profile(user_id, database=self.db), None
        )

        history = self._to_tasks(history_rows, "history")
        timetable = self._to_timetable(timetable_rows)

        stored_layer = _parse_overrides(pattern_row.get("preferences") if pattern_row else None, "stored patterns")
        settings_layer = _parse_overrides(profile_row.get("ai_preferences") if profile_row else None, "user settings")
        preferences = resolve_preferences(
            infer_preferences(tasks), stored_layer, settings_layer, request.preferences
        )

        profile = self._to_profile(pattern_row)
        if request.force_refresh or profile is None or self._is_stale(pattern_row, now):
            profile = PatternAnalyzer(preferences, history).analyze(user_id=user_id, now=now)
            await self._save_patterns(
                user_id, profile, merge_overrides(stored_layer, request.preferences),
                sources=self._data_sources(history, timetable, request), now=now,
            )
        else:
            logger.debug(f"Reusing stored patterns for {user_id} from {profile.last_analyzed}")

        events = [
            CalendarEvent(
                id=e.id,
                title=e.title,
                start_time=self._localize(e.start_time),
                end_time=self._localize(e.end_time),
            )
            for e in request.existing_events
        ]
        events += generate_timetable_events(timetable, now, horizon)

        result = SmartScheduler(
            tasks, profile, events, preferences, history,
            now=now, horizon_days=horizon, slot_minutes=self.config.slot_minutes,
        ).generate()

        try:
            await self.store.save_schedule(user_id, result.schedule, result.metadata)
            await self.store.cleanup_old_schedules(user_id, self.config.retention_days)
            await log_system("info", "Schedule generated", {
                "user_id": user_id,
                "scheduled_tasks": result.metadata.scheduled_tasks,
                "conflicts": result.metadata.conflicts,
            }, database=self.db)
        except Exception as e:
            logger.error(f"Failed to save schedule for {user_id}: {e}")

        return ScheduleResponse(
            schedule=result.schedule,
            adjustments=result.adjustments,
            metadata=ResponseMetadata(
                **result.metadata.model_dump(),
                patterns_used=profile.last_analyzed,
                data_quality=profile.data_quality,
                schedule_horizon=horizon,
                calendar_events_considered=len(events),
            ),
        )

    @staticmethod
    def _data_sources(history: List[Task], timetable: List[TimetableEntry], request: ScheduleRequest) -> List[str]:
        sources = ["user_preferences"]
        if history:
            sources.append("task_history")
        if timetable:
            sources.append("timetable")
        if request.existing_events:
            sources.append("calendar_events")
        return sources

    async def _save_patterns(
        self,
        user_id: str,
        profile: PatternProfile,
        preferences: PreferenceOverrides,
        sources: Any,
        now: datetime,
    ) -> None:
        try:
            await upsert_user_patterns(
                user_id,
                profile.model_dump(mode="json"),
                preferences.model_dump(mode="json", exclude_none=True),
                sources,
                now,
                database=self.db,
            )
        except Exception as e:
            logger.error(f"Failed to save patterns for {user_id}: {e}")

    # ---------- read ----------

    async def get_current(self, user_id: str, include_history: bool = False) -> CurrentScheduleResponse:
        current = await self.store.get_current_schedule(user_id)
        history = None
        if include_history:
            history = await self.store.get_schedule_history(user_id, self.config.history_window_days)

        pattern_row = await self._load_secondary(
            "stored patterns", lambda: get_user_patterns(user_id, database=self.db), None
        )

        last_updated = None
        if current is not None:
            last_updated = current.metadata.generated_at or current.created_at

        return CurrentScheduleResponse(
            current_schedule=current,
            schedule_history=history,
            user_patterns=self._to_profile(pattern_row),
            last_updated=last_updated,
        )

    async def analytics(self, user_id: str, days: int = 30) -> AnalyticsResponse:
        analytics = await self.store.get_scheduling_analytics(user_id, days)
        patterns = await self.store.get_recent_patterns(user_id)
        return AnalyticsResponse(
            **analytics.model_dump(),
            patterns=patterns,
            recommendations=generate_recommendations(analytics, patterns),
        )

    # ---------- incremental learning ----------

    async def refine_patterns(self, user_id: str, now: Optional[datetime] = None) -> RefineResponse:
        """Fold completions since the last analysis into the stored profile."""
        now = self._now(now)
        pattern_row = await get_user_patterns(user_id, database=self.db)
        profile = self._to_profile(pattern_row)
        if profile is None:
            return RefineResponse(refined=False, new_completions=0)

        since = self._localize(pattern_row.get("last_analyzed_at"))
        rows = await get_completed_since(user_id, since, database=self.db)
        completed = self._to_tasks(rows, "completion")

        if len(completed) < MIN_INCREMENTAL_SAMPLES:
            return RefineResponse(refined=False, new_completions=len(completed), user_patterns=profile)

        stored_layer = _parse_overrides(pattern_row.get("preferences"), "stored patterns")
        analyzer = PatternAnalyzer(resolve_preferences(stored_layer), profile=profile)
        refined = analyzer.learn_from_completion_data(completed, now=now)

        await self._save_patterns(
            user_id, refined, stored_layer or PreferenceOverrides(),
            sources=["completion_data"], now=now,
        )
        logger.info(f"Refined patterns for {user_id} from {len(completed)} completions")
        return RefineResponse(refined=True, new_completions=len(completed), user_patterns=refined)
