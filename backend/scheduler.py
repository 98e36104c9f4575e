"""
StudySpark Scheduling Backend - Smart Scheduler Module
Places pending tasks into free time around fixed calendar and timetable blocks,
preferring the user's productive hours, and suggests schedule adjustments
"""

import math
from collections import Counter, defaultdict
from datetime import datetime, time, timedelta
from typing import Optional, List, Dict, Tuple

from models import (
    Task, Priority, PatternProfile, UserPreferences, CalendarEvent, TimetableEntry,
    ScheduledTaskPlacement, ScheduleAdjustment, ScheduleMetadata, ScheduleResult,
    AdjustmentType, Level,
)
from learning_patterns import effective_duration, estimate_task_duration, task_difficulty


# ============================================
# CONFIGURATION
# ============================================

PRIORITY_RANK = {
    Priority.HIGH: 0,
    Priority.MEDIUM: 1,
    Priority.LOW: 2,
}

# Hour scores used in placement confidence
PRODUCTIVE_HOUR_SCORE = 1.0
FALLBACK_SLOT_SCORE = 0.6
CONFLICT_SLOT_SCORE = 0.3
HOUR_WEIGHT = 0.7
DURATION_WEIGHT = 0.3

HARD_TASK_DIFFICULTY = 7
MAX_CONSECUTIVE_MINUTES = 180
CONSECUTIVE_GAP_MINUTES = 30
SUBJECT_IMBALANCE_THRESHOLD = 0.7
MIN_PLACEMENTS_FOR_BALANCE = 3

# Historical windows: hours with enough completions that finished within estimate
HISTORY_WINDOW_MIN_TASKS = 10
HISTORY_WINDOW_MIN_COMPLETIONS = 3

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


# ============================================
# UTILITY FUNCTIONS
# ============================================

def parse_time(time_str: str) -> time:
    """Parse time string (HH:MM or HH:MM:SS) to time object."""
    parts = time_str.strip().split(":")
    if len(parts) < 2:
        raise ValueError(f"Invalid time: {time_str!r}")
    return time(int(parts[0]), int(parts[1]))


def align_to_slot(moment: datetime, slot_minutes: int) -> datetime:
    """First slot boundary at or after ``moment``."""
    midnight = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    elapsed = (moment - midnight).total_seconds() / 60
    slots = math.ceil(elapsed / slot_minutes - 1e-9)
    return midnight + timedelta(minutes=slots * slot_minutes)


def overlaps(start: datetime, end: datetime, block_start: datetime, block_end: datetime) -> bool:
    return start < block_end and end > block_start


def _sort_moment(value: Optional[datetime]) -> float:
    return value.timestamp() if value is not None else 0.0


# ============================================
# TIMETABLE EXPANSION
# ============================================

def generate_timetable_events(
    entries: List[TimetableEntry],
    start: datetime,
    horizon_days: int = 7,
) -> List[CalendarEvent]:
    """
    Expand weekly timetable rows into dated events from the start day through
    the last day of the horizon.

    Rows without days or clock times, or with an end before the start,
    are skipped.
    """
    events: List[CalendarEvent] = []
    first_day = start.date()

    for offset in range(horizon_days + 1):
        day = first_day + timedelta(days=offset)
        day_name = WEEKDAYS[day.weekday()]

        for entry in entries:
            days = {d.strip().lower() for d in entry.days_of_week}
            if day_name not in days or not entry.start_time or not entry.end_time:
                continue
            try:
                class_start = parse_time(entry.start_time)
                class_end = parse_time(entry.end_time)
            except ValueError:
                continue
            if class_end <= class_start:
                continue

            events.append(CalendarEvent(
                id=f"timetable-{entry.id}-{day.isoformat()}",
                title=entry.course_name,
                start_time=datetime.combine(day, class_start, tzinfo=start.tzinfo),
                end_time=datetime.combine(day, class_end, tzinfo=start.tzinfo),
            ))

    return events


# ============================================
# SMART SCHEDULER
# ============================================

class SmartScheduler:
    """
    Greedy slot allocator over a fixed horizon.

    Tasks are taken in due-date then priority order. Each one goes to the
    earliest free productive-hour slot before its deadline, else the earliest
    free slot before its deadline, else the earliest free time after now
    (recorded as a conflict). Fixed events are never overlapped.
    """

    def __init__(
        self,
        tasks: List[Task],
        patterns: PatternProfile,
        existing_events: Optional[List[CalendarEvent]] = None,
        preferences: Optional[UserPreferences] = None,
        history: Optional[List[Task]] = None,
        *,
        now: datetime,
        horizon_days: int = 7,
        slot_minutes: int = 30,
    ):
        self.tasks = list(tasks)
        self.patterns = patterns
        self.existing_events = list(existing_events or [])
        self.preferences = preferences or UserPreferences()
        self.history = list(history or [])
        self.now = now
        self.horizon_days = horizon_days
        self.slot_minutes = slot_minutes
        self.horizon_end = now + timedelta(days=horizon_days)

        self.productive_hours = self._productive_hours()
        self.available_hours = set(self.preferences.available_study_hours)
        self.preferred_duration = patterns.time_pattern.preferred_study_duration
        self.break_minutes = patterns.time_pattern.average_break_time

        self._fixed: List[Tuple[datetime, datetime]] = [
            (e.start_time, e.end_time) for e in self.existing_events if e.end_time > e.start_time
        ]
        self._busy: List[Tuple[datetime, datetime]] = []

    def generate(self) -> ScheduleResult:
        self._busy = list(self._fixed)
        pending = self._prioritized_tasks()
        placements: List[ScheduledTaskPlacement] = []
        adjustments: List[ScheduleAdjustment] = []
        conflicts = 0

        for task in pending:
            placement, stage, deadline = self._place(task)
            placements.append(placement)

            if stage == 3:
                conflicts += 1
                adjustments.append(self._conflict_adjustment(task, placement, deadline))
            elif stage == 2:
                adjustments.append(self._time_adjustment(task, placement))

            if (placement.estimated_difficulty or 0) > HARD_TASK_DIFFICULTY and not placement.in_productive_hours:
                adjustments.append(self._difficulty_adjustment(task, placement))

        adjustments.extend(self._break_adjustments(placements))
        balance = self._balance_adjustment(placements)
        if balance:
            adjustments.append(balance)

        placements.sort(key=lambda p: _sort_moment(p.scheduled_start))

        return ScheduleResult(
            schedule=placements,
            adjustments=adjustments,
            metadata=ScheduleMetadata(
                total_tasks=len(pending),
                scheduled_tasks=len(placements),
                conflicts=conflicts,
                efficiency=self._efficiency(placements),
                confidence=self._confidence(placements),
                generated_at=self.now,
            ),
        )

    # ---------- ordering ----------

    def _prioritized_tasks(self) -> List[Task]:
        pending = [t for t in self.tasks if not t.completed]
        return sorted(
            pending,
            key=lambda t: (
                t.due_date is None,
                _sort_moment(t.due_date),
                PRIORITY_RANK.get(t.priority, 1),
            ),
        )

    def _productive_hours(self) -> set:
        hours = set(self.patterns.time_pattern.most_productive_hours)

        if len(self.history) > HISTORY_WINDOW_MIN_TASKS:
            per_hour: Dict[int, List[float]] = defaultdict(list)
            for task in self.history:
                if task.completed and task.completed_at is not None:
                    expected = task.estimated_duration or 60
                    per_hour[task.completed_at.hour].append(expected / effective_duration(task))
            for hour, ratios in per_hour.items():
                if len(ratios) >= HISTORY_WINDOW_MIN_COMPLETIONS and sum(ratios) / len(ratios) >= 1.0:
                    hours.add(hour)

        return hours

    # ---------- slot search ----------

    def _is_free(self, start: datetime, end: datetime) -> bool:
        return not any(overlaps(start, end, b_start, b_end) for b_start, b_end in self._busy)

    def _candidate_starts(self, duration: int, deadline: datetime):
        step = timedelta(minutes=self.slot_minutes)
        length = timedelta(minutes=duration)
        start = align_to_slot(self.now, self.slot_minutes)
        while start + length <= deadline:
            yield start
            start += step

    def _first_free(self, duration: int, deadline: datetime, hours: Optional[set] = None) -> Optional[datetime]:
        length = timedelta(minutes=duration)
        for start in self._candidate_starts(duration, deadline):
            if hours is not None and start.hour not in hours:
                continue
            if self._is_free(start, start + length):
                return start
        return None

    def _earliest_after_now(self, duration: int) -> datetime:
        """Earliest free start at or after now, jumping past busy blocks."""
        length = timedelta(minutes=duration)
        start = align_to_slot(self.now, self.slot_minutes)
        while True:
            blocking = [b_end for b_start, b_end in self._busy if overlaps(start, start + length, b_start, b_end)]
            if not blocking:
                return start
            start = max(blocking)

    def _place(self, task: Task) -> Tuple[ScheduledTaskPlacement, int, datetime]:
        duration = task.estimated_duration or estimate_task_duration(task)
        deadline = min(task.due_date, self.horizon_end) if task.due_date else self.horizon_end

        stage = 1
        start = self._first_free(duration, deadline, self.productive_hours)
        if start is None:
            stage = 2
            start = self._first_free(duration, deadline, self.available_hours)
            if start is None:
                start = self._first_free(duration, deadline)
        if start is None:
            stage = 3
            start = self._earliest_after_now(duration)

        end = start + timedelta(minutes=duration)
        self._busy.append((start, end + timedelta(minutes=self.break_minutes)))

        in_productive = start.hour in self.productive_hours
        hour_score = {1: PRODUCTIVE_HOUR_SCORE, 2: FALLBACK_SLOT_SCORE, 3: CONFLICT_SLOT_SCORE}[stage]

        placement = ScheduledTaskPlacement(
            task_id=task.id,
            title=task.title,
            subject=task.subject,
            scheduled_start=start,
            scheduled_end=end,
            duration=duration,
            confidence=self._placement_confidence(hour_score, duration),
            reasoning=self._reasoning(stage, start),
            adjustment_reason="Rescheduled past its due date: no free time before the deadline" if stage == 3 else None,
            estimated_difficulty=task_difficulty(task),
            in_productive_hours=in_productive,
        )
        return placement, stage, deadline

    # ---------- scoring ----------

    def _placement_confidence(self, hour_score: float, duration: int) -> float:
        preferred = self.preferred_duration
        duration_score = 1 - abs(duration - preferred) / max(duration, preferred)
        score = HOUR_WEIGHT * hour_score + DURATION_WEIGHT * duration_score
        return round(max(0.0, min(1.0, score)), 4)

    @staticmethod
    def _reasoning(stage: int, start: datetime) -> str:
        when = start.strftime("%a %H:%M")
        if stage == 1:
            return f"Scheduled {when} during one of your most productive hours"
        if stage == 2:
            return f"Scheduled {when}: no productive-hour slot was free before the due date"
        return f"Scheduled {when}, the earliest free time; no free slot before the due date"

    @staticmethod
    def _efficiency(placements: List[ScheduledTaskPlacement]) -> float:
        if not placements:
            return 0.0
        return sum(1 for p in placements if p.in_productive_hours) / len(placements)

    @staticmethod
    def _confidence(placements: List[ScheduledTaskPlacement]) -> float:
        if not placements:
            return 0.0
        return round(sum(p.confidence for p in placements) / len(placements), 4)

    # ---------- adjustments ----------

    def _next_productive_start(self, after: datetime) -> datetime:
        """Start of the next productive hour at or after ``after``."""
        if not self.productive_hours:
            return after
        candidate = after.replace(minute=0, second=0, microsecond=0)
        if candidate < after:
            candidate += timedelta(hours=1)
        for _ in range(24):
            if candidate.hour in self.productive_hours:
                return candidate
            candidate += timedelta(hours=1)
        return after

    def _conflict_adjustment(self, task: Task, placement: ScheduledTaskPlacement, deadline: datetime) -> ScheduleAdjustment:
        reason = f"No free time before the deadline for {task.title}; deferred to the next available slot"
        return ScheduleAdjustment(
            id=f"conflict-{task.id}",
            task_id=task.id,
            original_time=deadline,
            suggested_time=placement.scheduled_start,
            reason=reason,
            confidence=0.6,
            priority=Level.HIGH,
            type=AdjustmentType.CONFLICT_RESOLUTION,
            title=f"Resolve: {task.title}",
            description=reason,
            impact=Level.HIGH,
            effort=Level.MEDIUM,
            suggested_change="defer the conflicting task",
            affected_tasks=[task.id],
        )

    def _time_adjustment(self, task: Task, placement: ScheduledTaskPlacement) -> ScheduleAdjustment:
        suggested = self._next_productive_start(placement.scheduled_start)
        return ScheduleAdjustment(
            id=f"time-{task.id}",
            task_id=task.id,
            original_time=placement.scheduled_start,
            suggested_time=suggested,
            reason="Placed outside your productive hours because none were free before the due date",
            confidence=0.6,
            priority=Level.MEDIUM,
            type=AdjustmentType.TIME_OPTIMIZATION,
            title=f"Move {task.title} to a productive hour",
            description="Free up a productive-hour slot before the due date to work on this task when you focus best",
            impact=Level.MEDIUM,
            effort=Level.LOW,
            suggested_change=f"Move to {suggested.strftime('%a %H:%M')}",
            affected_tasks=[task.id],
        )

    def _difficulty_adjustment(self, task: Task, placement: ScheduledTaskPlacement) -> ScheduleAdjustment:
        suggested = self._next_productive_start(placement.scheduled_start)
        return ScheduleAdjustment(
            id=f"difficulty-{task.id}",
            task_id=task.id,
            original_time=placement.scheduled_start,
            suggested_time=suggested,
            reason="Hard tasks go best during peak hours",
            confidence=0.75,
            priority=Level.MEDIUM,
            type=AdjustmentType.DIFFICULTY_ADJUSTMENT,
            title="Optimize Difficulty Progression",
            description="Start with easier tasks to build momentum, then tackle harder ones during peak hours",
            impact=Level.MEDIUM,
            effort=Level.LOW,
            suggested_change="Reorder tasks by difficulty within each study session",
            affected_tasks=[task.id],
        )

    def _break_adjustments(self, placements: List[ScheduledTaskPlacement]) -> List[ScheduleAdjustment]:
        """One suggestion per run of back-to-back work longer than three hours."""
        ordered = sorted(placements, key=lambda p: _sort_moment(p.scheduled_start))
        runs: List[List[ScheduledTaskPlacement]] = []
        for placement in ordered:
            if runs:
                gap = (placement.scheduled_start - runs[-1][-1].scheduled_end).total_seconds() / 60
                if gap <= CONSECUTIVE_GAP_MINUTES:
                    runs[-1].append(placement)
                    continue
            runs.append([placement])

        adjustments = []
        for run in runs:
            span = (run[-1].scheduled_end - run[0].scheduled_start).total_seconds() / 60
            if span <= MAX_CONSECUTIVE_MINUTES:
                continue
            first = run[0]
            adjustments.append(ScheduleAdjustment(
                id=f"break-{first.task_id}",
                task_id=first.task_id,
                original_time=first.scheduled_start,
                suggested_time=first.scheduled_start + timedelta(minutes=first.duration + 15),
                reason="Consider adding 15-minute breaks between long study sessions to maintain focus",
                confidence=0.8,
                priority=Level.MEDIUM,
                type=AdjustmentType.PRODUCTIVITY_OPTIMIZATION,
                title="Add Strategic Breaks",
                description="Consider adding 15-minute breaks between long study sessions to maintain focus",
                impact=Level.MEDIUM,
                effort=Level.LOW,
                suggested_change="Insert breaks after every 2-3 hours of continuous work",
                affected_tasks=[p.task_id for p in run],
            ))
        return adjustments

    def _balance_adjustment(self, placements: List[ScheduledTaskPlacement]) -> Optional[ScheduleAdjustment]:
        subjects = Counter(p.subject for p in placements if p.subject)
        if len(placements) < MIN_PLACEMENTS_FOR_BALANCE or not subjects:
            return None

        subject, count = subjects.most_common(1)[0]
        if count / len(placements) <= SUBJECT_IMBALANCE_THRESHOLD:
            return None

        first = min(placements, key=lambda p: _sort_moment(p.scheduled_start))
        reason = f"Your schedule is heavily focused on {subject}. Consider spreading subjects throughout the week"
        return ScheduleAdjustment(
            id=f"balance-{first.task_id}",
            task_id=first.task_id,
            original_time=first.scheduled_start,
            suggested_time=first.scheduled_start + timedelta(hours=1),
            reason=reason,
            confidence=0.7,
            priority=Level.HIGH,
            type=AdjustmentType.PRODUCTIVITY_OPTIMIZATION,
            title="Balance Subject Distribution",
            description=reason,
            impact=Level.HIGH,
            effort=Level.MEDIUM,
            suggested_change="Redistribute tasks to ensure no subject dominates any single day",
            affected_tasks=[p.task_id for p in placements if p.subject == subject],
        )
