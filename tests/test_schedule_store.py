from datetime import datetime, timedelta, timezone

import pytest

from models import (
    ScheduledTaskPlacement, ScheduleMetadata, TaskProgressUpdate, SchedulingAnalytics,
    RecentSchedulingPatterns, SubjectScheduleStats, Level,
)
from schedule_store import ScheduleStore, generate_recommendations


UTC = timezone.utc
START = datetime(2026, 3, 2, 14, 0, tzinfo=UTC)


def placement(task_id, offset_hours=0, subject="Math", confidence=0.8):
    start = START + timedelta(hours=offset_hours)
    return ScheduledTaskPlacement(
        task_id=task_id,
        title=f"Task {task_id}",
        subject=subject,
        scheduled_start=start,
        scheduled_end=start + timedelta(minutes=60),
        duration=60,
        confidence=confidence,
        reasoning="productive hour",
    )


@pytest.fixture
def store(fake_db):
    return ScheduleStore(fake_db, tz=UTC)


# ============================================
# WRITE / READ
# ============================================

async def test_save_and_read_back(store, fake_db):
    placements = [placement("a"), placement("b", 2, subject="History")]
    metadata = ScheduleMetadata(total_tasks=2, scheduled_tasks=2, generated_at=START)

    saved = await store.save_schedule("u1", placements, metadata)
    current = await store.get_current_schedule("u1")

    assert saved.created_at is not None
    assert current.schedule == placements
    assert current.metadata.scheduled_tasks == 2
    assert len(fake_db.tables["scheduled_tasks"]) == 2
    assert fake_db.tables["scheduled_tasks"][1]["subject"] == "History"


async def test_current_is_replaced_and_history_appends(store, fake_db):
    await store.save_schedule("u1", [placement("a")], ScheduleMetadata(scheduled_tasks=1))
    await store.save_schedule("u1", [placement("b"), placement("c", 2)], ScheduleMetadata(scheduled_tasks=2))

    current = await store.get_current_schedule("u1")
    history = await store.get_schedule_history("u1")

    assert [p.task_id for p in current.schedule] == ["b", "c"]
    assert len(fake_db.tables["current_schedules"]) == 1
    assert [h.metadata.scheduled_tasks for h in history] == [2, 1]


async def test_history_window_excludes_old_entries(store, fake_db):
    await store.save_schedule("u1", [placement("a")], ScheduleMetadata())
    fake_db.tables["schedule_history"].append({
        "id": 999, "user_id": "u1", "schedule": "[]", "metadata": "{}",
        "created_at": datetime.now(UTC) - timedelta(days=40),
    })

    assert len(await store.get_schedule_history("u1", window_days=30)) == 1
    assert len(await store.get_schedule_history("u1", window_days=60)) == 2


async def test_missing_schedule(store):
    assert await store.get_current_schedule("nobody") is None
    assert await store.get_schedule_history("nobody") == []


async def test_empty_schedule_writes_no_tracking_rows(store, fake_db):
    await store.save_schedule("u1", [], ScheduleMetadata())
    assert fake_db.tables["scheduled_tasks"] == []
    assert len(fake_db.tables["schedule_history"]) == 1


# ============================================
# PROGRESS & CLEANUP
# ============================================

async def test_update_task_progress(store, fake_db):
    await store.save_schedule("u1", [placement("a")], ScheduleMetadata())
    finished = START + timedelta(minutes=50)

    updated = await store.update_task_progress("u1", "a", TaskProgressUpdate(actual_start=START, actual_end=finished))
    missing = await store.update_task_progress("u1", "zzz", TaskProgressUpdate(actual_end=finished))

    assert updated == 1
    assert missing == 0
    row = fake_db.tables["scheduled_tasks"][0]
    assert row["actual_end"] == finished
    assert row["was_rescheduled"] is False


async def test_cleanup_removes_old_tracking_rows_only(store, fake_db):
    await store.save_schedule("u1", [placement("a"), placement("b", 2)], ScheduleMetadata())
    fake_db.tables["scheduled_tasks"][0]["created_at"] = datetime.now(UTC) - timedelta(days=120)

    deleted = await store.cleanup_old_schedules("u1", retention_days=90)

    assert deleted == 1
    assert [r["task_id"] for r in fake_db.tables["scheduled_tasks"]] == ["b"]
    assert len(fake_db.tables["schedule_history"]) == 1


# ============================================
# ANALYTICS
# ============================================

async def test_scheduling_analytics(store):
    await store.save_schedule(
        "u1",
        [placement("on-time"), placement("late", 2), placement("open", 4)],
        ScheduleMetadata(),
    )
    on_time = START + timedelta(minutes=70)
    await store.update_task_progress("u1", "on-time", TaskProgressUpdate(actual_start=START, actual_end=on_time))
    late_start = START + timedelta(hours=2)
    await store.update_task_progress(
        "u1", "late", TaskProgressUpdate(actual_start=late_start, actual_end=late_start + timedelta(hours=3))
    )
    await store.update_task_progress("u1", "open", TaskProgressUpdate(was_rescheduled=True, reschedule_reason="sick"))

    analytics = await store.get_scheduling_analytics("u1")

    assert analytics.total_scheduled == 3
    assert analytics.completed_on_time == 1
    assert analytics.average_actual_vs_scheduled == pytest.approx((70 / 60 + 3) / 2)
    assert analytics.most_productive_hours == [15, 19]
    assert analytics.reschedule_rate == pytest.approx(1 / 3)


async def test_analytics_without_rows(store):
    analytics = await store.get_scheduling_analytics("u1")
    assert analytics == SchedulingAnalytics()


async def test_recent_patterns(store):
    await store.save_schedule(
        "u1",
        [placement("a", confidence=0.9), placement("b", 2, confidence=0.5), placement("c", 4, subject=None)],
        ScheduleMetadata(),
    )
    await store.update_task_progress("u1", "a", TaskProgressUpdate(actual_end=START + timedelta(hours=1)))

    patterns = await store.get_recent_patterns("u1")

    assert patterns.preferred_start_times == [14, 16, 18]
    assert patterns.average_session_length == pytest.approx(60.0)
    math = patterns.subject_performance["Math"]
    assert (math.completed, math.total) == (1, 2)
    assert math.avg_confidence == pytest.approx(0.7)
    assert patterns.subject_performance["Unknown"].total == 1


# ============================================
# RECOMMENDATIONS
# ============================================

def test_recommendations_for_struggling_user():
    analytics = SchedulingAnalytics(
        total_scheduled=10, completed_on_time=3, average_actual_vs_scheduled=1.8,
        most_productive_hours=[9, 14], reschedule_rate=0.4,
    )
    patterns = RecentSchedulingPatterns(subject_performance={
        "Chemistry": SubjectScheduleStats(completed=1, total=4, avg_confidence=0.6),
        "Art": SubjectScheduleStats(completed=4, total=4, avg_confidence=0.9),
    })

    recommendations = generate_recommendations(analytics, patterns)
    by_type = {r.type: r for r in recommendations}

    assert by_type["completion"].priority == Level.HIGH
    assert by_type["scheduling"].priority == Level.MEDIUM
    assert by_type["timing"].priority == Level.MEDIUM
    assert "Chemistry" in by_type["subjects"].message
    assert "Art" not in by_type["subjects"].message
    assert "9, 14" in by_type["productivity"].message


def test_recommendations_for_strong_user():
    analytics = SchedulingAnalytics(
        total_scheduled=10, completed_on_time=10, average_actual_vs_scheduled=0.5,
    )

    recommendations = generate_recommendations(analytics, RecentSchedulingPatterns())

    assert [(r.type, r.priority) for r in recommendations] == [
        ("completion", Level.LOW), ("timing", Level.LOW),
    ]


def test_no_recommendations_without_data():
    assert generate_recommendations(SchedulingAnalytics(), RecentSchedulingPatterns()) == []
