"""
StudySpark Scheduling Backend - Schedule Store
Persists generated schedules and per-placement tracking rows, and derives
scheduling analytics from them
"""

import json
from collections import Counter, defaultdict
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional, List, Dict

from database import db, Database, load_json
from logger import get_logger
from models import (
    ScheduledTaskPlacement, ScheduleMetadata, StoredSchedule, TaskProgressUpdate,
    SchedulingAnalytics, RecentSchedulingPatterns, SubjectScheduleStats,
    Recommendation, Level,
)

logger = get_logger(__name__)

ON_TIME_GRACE_MINUTES = 30


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _rows_affected(status: str) -> int:
    """Parse the row count from an asyncpg status tag such as ``UPDATE 3``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


class ScheduleStore:
    """Current schedule per user, append-only history, and tracking rows."""

    def __init__(self, database: Database = db, tz: Optional[tzinfo] = None):
        self.db = database
        self.tz = tz

    def _hour(self, moment: datetime) -> int:
        if self.tz is not None and moment.tzinfo is not None:
            moment = moment.astimezone(self.tz)
        return moment.hour

    # ============================================
    # WRITE
    # ============================================

    async def save_schedule(
        self,
        user_id: str,
        placements: List[ScheduledTaskPlacement],
        metadata: ScheduleMetadata,
    ) -> StoredSchedule:
        """Upsert the current schedule, append a history entry, track each placement."""
        schedule_json = json.dumps([p.model_dump(mode="json") for p in placements])
        metadata_json = json.dumps(metadata.model_dump(mode="json"))

        row = await self.db.execute_returning(
            """INSERT INTO current_schedules (user_id, schedule, metadata, created_at, updated_at)
               VALUES ($1, $2::jsonb, $3::jsonb, NOW(), NOW())
               ON CONFLICT (user_id) DO UPDATE SET
                   schedule = EXCLUDED.schedule,
                   metadata = EXCLUDED.metadata,
                   created_at = NOW(),
                   updated_at = NOW()
               RETURNING created_at""",
            user_id, schedule_json, metadata_json
        )

        await self.db.execute(
            """INSERT INTO schedule_history (user_id, schedule, metadata)
               VALUES ($1, $2::jsonb, $3::jsonb)""",
            user_id, schedule_json, metadata_json
        )

        if placements:
            await self.db.execute_many(
                """INSERT INTO scheduled_tasks
                   (user_id, task_id, subject, scheduled_start, scheduled_end, confidence_score, reasoning, was_rescheduled)
                   VALUES ($1, $2, $3, $4, $5, $6, $7, false)""",
                [
                    (user_id, p.task_id, p.subject, p.scheduled_start, p.scheduled_end, p.confidence, p.reasoning)
                    for p in placements
                ]
            )

        logger.info(f"Saved schedule with {len(placements)} placements for user {user_id}")
        return StoredSchedule(
            user_id=user_id,
            schedule=placements,
            metadata=metadata,
            created_at=row["created_at"] if row else None,
        )

    async def update_task_progress(self, user_id: str, task_id: str, update: TaskProgressUpdate) -> int:
        """Record actual start/end or a reschedule; returns the number of tracking rows touched."""
        status = await self.db.execute(
            """UPDATE scheduled_tasks SET
                   actual_start = COALESCE($3, actual_start),
                   actual_end = COALESCE($4, actual_end),
                   was_rescheduled = COALESCE($5, was_rescheduled),
                   reschedule_reason = COALESCE($6, reschedule_reason),
                   updated_at = NOW()
               WHERE user_id = $1 AND task_id = $2""",
            user_id, task_id,
            update.actual_start, update.actual_end,
            update.was_rescheduled, update.reschedule_reason
        )
        return _rows_affected(status)

    async def cleanup_old_schedules(self, user_id: str, retention_days: int = 90) -> int:
        """Delete tracking rows older than the retention window. History is kept."""
        cutoff = _utcnow() - timedelta(days=retention_days)
        status = await self.db.execute(
            "DELETE FROM scheduled_tasks WHERE user_id = $1 AND created_at < $2",
            user_id, cutoff
        )
        deleted = _rows_affected(status)
        if deleted:
            logger.info(f"Cleaned up {deleted} scheduled task rows for user {user_id}")
        return deleted

    # ============================================
    # READ
    # ============================================

    @staticmethod
    def _to_stored(row: dict) -> StoredSchedule:
        return StoredSchedule(
            user_id=row["user_id"],
            schedule=load_json(row.get("schedule"), []),
            metadata=load_json(row.get("metadata"), {}),
            created_at=row.get("created_at"),
        )

    async def get_current_schedule(self, user_id: str) -> Optional[StoredSchedule]:
        row = await self.db.fetch_one(
            "SELECT user_id, schedule, metadata, created_at FROM current_schedules WHERE user_id = $1",
            user_id
        )
        return self._to_stored(row) if row else None

    async def get_schedule_history(self, user_id: str, window_days: int = 30) -> List[StoredSchedule]:
        """History entries inside the trailing window, newest first."""
        cutoff = _utcnow() - timedelta(days=window_days)
        rows = await self.db.fetch(
            """SELECT user_id, schedule, metadata, created_at FROM schedule_history
               WHERE user_id = $1 AND created_at >= $2
               ORDER BY created_at DESC, id DESC""",
            user_id, cutoff
        )
        return [self._to_stored(row) for row in rows]

    # ============================================
    # ANALYTICS
    # ============================================

    async def get_scheduling_analytics(self, user_id: str, days: int = 30) -> SchedulingAnalytics:
        cutoff = _utcnow() - timedelta(days=days)
        rows = await self.db.fetch(
            """SELECT * FROM scheduled_tasks
               WHERE user_id = $1 AND created_at >= $2""",
            user_id, cutoff
        )
        if not rows:
            return SchedulingAnalytics()

        finished = [r for r in rows if r.get("actual_end")]
        grace = timedelta(minutes=ON_TIME_GRACE_MINUTES)
        on_time = sum(1 for r in finished if r["actual_end"] <= r["scheduled_end"] + grace)

        ratios = []
        for r in finished:
            if not r.get("actual_start"):
                continue
            scheduled = (r["scheduled_end"] - r["scheduled_start"]).total_seconds()
            if scheduled > 0:
                ratios.append((r["actual_end"] - r["actual_start"]).total_seconds() / scheduled)

        hours = Counter(self._hour(r["actual_end"]) for r in finished)
        top_hours = sorted(hours, key=lambda h: (-hours[h], h))[:3]
        rescheduled = sum(1 for r in rows if r.get("was_rescheduled"))

        return SchedulingAnalytics(
            total_scheduled=len(rows),
            completed_on_time=on_time,
            average_actual_vs_scheduled=sum(ratios) / len(ratios) if ratios else 1.0,
            most_productive_hours=top_hours,
            reschedule_rate=rescheduled / len(rows),
        )

    async def get_recent_patterns(self, user_id: str, limit: int = 50) -> RecentSchedulingPatterns:
        rows = await self.db.fetch(
            """SELECT * FROM scheduled_tasks
               WHERE user_id = $1
               ORDER BY created_at DESC
               LIMIT $2""",
            user_id, limit
        )
        if not rows:
            return RecentSchedulingPatterns()

        start_hours = sorted({self._hour(r["scheduled_start"]) for r in rows})
        lengths = [(r["scheduled_end"] - r["scheduled_start"]).total_seconds() / 60 for r in rows]

        totals: Dict[str, Dict[str, float]] = defaultdict(lambda: {"completed": 0, "total": 0, "confidence": 0.0})
        for r in rows:
            stats = totals[r.get("subject") or "Unknown"]
            stats["total"] += 1
            if r.get("actual_end"):
                stats["completed"] += 1
            stats["confidence"] += r.get("confidence_score") or 0.0

        return RecentSchedulingPatterns(
            preferred_start_times=start_hours,
            average_session_length=sum(lengths) / len(lengths),
            subject_performance={
                subject: SubjectScheduleStats(
                    completed=int(stats["completed"]),
                    total=int(stats["total"]),
                    avg_confidence=stats["confidence"] / stats["total"],
                )
                for subject, stats in totals.items()
            },
        )


# ============================================
# RECOMMENDATIONS
# ============================================

def generate_recommendations(
    analytics: SchedulingAnalytics,
    patterns: RecentSchedulingPatterns,
) -> List[Recommendation]:
    """Rule-based advice from scheduling analytics."""
    recommendations: List[Recommendation] = []
    hours_text = ", ".join(str(h) for h in analytics.most_productive_hours)

    if analytics.total_scheduled > 0:
        completion_rate = analytics.completed_on_time / analytics.total_scheduled
        if completion_rate < 0.6:
            recommendations.append(Recommendation(
                type="completion",
                message="Your task completion rate is below 60%. Consider scheduling shorter sessions or reducing task difficulty.",
                priority=Level.HIGH,
            ))
        elif completion_rate > 0.9:
            recommendations.append(Recommendation(
                type="completion",
                message="Excellent completion rate! You might be ready for more challenging tasks or longer sessions.",
                priority=Level.LOW,
            ))

    if analytics.reschedule_rate > 0.3:
        recommendations.append(Recommendation(
            type="scheduling",
            message="You reschedule tasks frequently. Consider building more buffer time into your schedule.",
            priority=Level.MEDIUM,
        ))

    if analytics.average_actual_vs_scheduled > 1.5:
        recommendations.append(Recommendation(
            type="timing",
            message="Tasks often take longer than scheduled. Consider increasing estimated durations by 25-50%.",
            priority=Level.MEDIUM,
        ))
    elif 0 < analytics.average_actual_vs_scheduled < 0.7:
        recommendations.append(Recommendation(
            type="timing",
            message="You consistently finish tasks early. You could schedule more tasks or increase difficulty.",
            priority=Level.LOW,
        ))

    struggling = [
        subject for subject, stats in patterns.subject_performance.items()
        if stats.total and stats.completed / stats.total < 0.5
    ]
    if struggling and analytics.most_productive_hours:
        recommendations.append(Recommendation(
            type="subjects",
            message=f"Consider scheduling {', '.join(struggling)} during your most productive hours ({hours_text}:00).",
            priority=Level.MEDIUM,
        ))

    if analytics.most_productive_hours:
        recommendations.append(Recommendation(
            type="productivity",
            message=f"Your most productive hours are {hours_text}:00. Schedule important tasks during these times.",
            priority=Level.LOW,
        ))

    return recommendations
