"""
StudySpark Scheduling Backend - Learning Pattern Analysis
Learns a user's study habits from stated preferences and completed tasks
"""

import math
import statistics
from collections import defaultdict
from datetime import datetime
from typing import Optional, List, Dict, Iterable

from models import (
    Task, Priority, TaskType, UserPreferences, PatternProfile, TimePattern,
    DifficultyProfile, SubjectInsights, SubjectPerformance, DifficultyTrend,
    StudyTimePreference, SessionLengthPreference, BreakFrequency,
)


# ============================================
# PREFERENCE MAPPINGS
# ============================================

PRODUCTIVE_HOURS_BY_PREFERENCE = {
    StudyTimePreference.MORNING: [9, 10, 11],
    StudyTimePreference.AFTERNOON: [14, 15, 16],
    StudyTimePreference.EVENING: [19, 20, 21],
    StudyTimePreference.NIGHT: [22, 23, 0],
}

SESSION_MINUTES_BY_PREFERENCE = {
    SessionLengthPreference.SHORT: 30,
    SessionLengthPreference.MEDIUM: 45,
    SessionLengthPreference.LONG: 60,
}

BREAK_MINUTES_BY_FREQUENCY = {
    BreakFrequency.FREQUENT: 5,
    BreakFrequency.MODERATE: 10,
    BreakFrequency.MINIMAL: 15,
}

PRIORITY_DIFFICULTY = {
    Priority.HIGH: 8.0,
    Priority.MEDIUM: 5.0,
    Priority.LOW: 3.0,
}

PREFERRED_SUBJECT_DIFFICULTY = 3.0
STRUGGLING_SUBJECT_DIFFICULTY = 7.0

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")

# Minimum samples before a signal is trusted
MIN_HOURLY_SAMPLES = 10
MIN_DIFFICULTY_SAMPLES = 5
MIN_ADAPTATION_SAMPLES = 10
MIN_GROUP_SIZE = 3
MIN_CONSISTENCY_SAMPLES = 7
MIN_INCREMENTAL_SAMPLES = 5
MIN_HOUR_COMPLETIONS = 2

MAX_PRODUCTIVE_HOURS = 5
TREND_WINDOW = 10
TREND_THRESHOLD = 0.5
DATA_QUALITY_SATURATION = 50
DEFAULT_DURATION_MINUTES = 60


# ============================================
# TASK HELPERS
# ============================================

def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def clamp_unit(value: float) -> float:
    """Clamp a score into [0, 1]."""
    return max(0.0, min(1.0, float(value)))


def effective_duration(task: Task) -> int:
    """Minutes a task took: time spent, else its estimate, else one hour."""
    return task.time_spent or task.estimated_duration or DEFAULT_DURATION_MINUTES


def estimate_task_duration(task: Task) -> int:
    """Heuristic duration in minutes from priority, type and description length."""
    minutes = float(DEFAULT_DURATION_MINUTES)

    if task.priority == Priority.HIGH:
        minutes *= 1.5
    elif task.priority == Priority.LOW:
        minutes *= 0.75

    if task.type == TaskType.ACADEMIC:
        minutes *= 1.2
    elif task.type == TaskType.PERSONAL:
        minutes *= 0.8

    if task.description and len(task.description) > 200:
        minutes *= 1.3

    return round_half_up(minutes)


def task_difficulty(task: Task) -> float:
    """Recorded difficulty, or one derived from priority."""
    if task.difficulty_level is not None:
        return float(task.difficulty_level)
    return PRIORITY_DIFFICULTY.get(task.priority, 5.0)


def _chronological(tasks: Iterable[Task]) -> List[Task]:
    # Tasks lacking a timestamp sort first, keeping their relative order
    return sorted(
        tasks,
        key=lambda t: t.completed_at.timestamp() if t.completed_at else float("-inf")
    )


def _unique(values: Iterable) -> list:
    seen = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


def data_quality_for(completed_count: int) -> float:
    """0.3 with no history, rising linearly to 1.0 at 50 completions."""
    if completed_count <= 0:
        return 0.3
    return clamp_unit(0.3 + 0.7 * min(completed_count, DATA_QUALITY_SATURATION) / DATA_QUALITY_SATURATION)


# ============================================
# PATTERN ANALYZER
# ============================================

class PatternAnalyzer:
    """
    Builds a PatternProfile from preferences and completed-task history.

    Pure: no I/O and no clock reads. ``now`` is only stamped onto the result.
    """

    def __init__(
        self,
        preferences: Optional[UserPreferences] = None,
        history: Optional[List[Task]] = None,
        profile: Optional[PatternProfile] = None,
    ):
        self.preferences = preferences or UserPreferences()
        self.history = list(history or [])
        self.profile = profile

    # ---------- full analysis ----------

    def analyze(self, user_id: Optional[str] = None, now: Optional[datetime] = None) -> PatternProfile:
        """Seed a profile from preferences, then refine it from history."""
        profile = PatternProfile(user_id=user_id, last_analyzed=now)

        self._seed_from_preferences(profile)

        completed = [t for t in self.history if t.completed]
        if self.history:
            self._learn_productivity(profile, completed)
            self._learn_difficulty(profile, completed)
            self._learn_subject_performance(profile, self.history)
            self._learn_consistency(profile, completed)

        profile.total_tasks_analyzed = len(self.history)
        profile.data_quality = data_quality_for(len(completed))
        return profile

    def _seed_from_preferences(self, profile: PatternProfile) -> None:
        prefs = self.preferences
        profile.time_pattern = TimePattern(
            most_productive_hours=list(PRODUCTIVE_HOURS_BY_PREFERENCE[prefs.study_time_preference]),
            preferred_study_duration=SESSION_MINUTES_BY_PREFERENCE[prefs.session_length_preference],
            average_break_time=BREAK_MINUTES_BY_FREQUENCY[prefs.break_frequency],
        )

        difficulty_map: Dict[str, float] = {}
        for subject in prefs.preferred_subjects:
            difficulty_map[subject] = PREFERRED_SUBJECT_DIFFICULTY
        for subject in prefs.struggling_subjects:
            difficulty_map[subject] = STRUGGLING_SUBJECT_DIFFICULTY

        profile.difficulty_profile = DifficultyProfile(subject_difficulty_map=difficulty_map)
        profile.subject_insights = SubjectInsights(
            preferred_subjects=list(prefs.preferred_subjects),
            struggling_subjects=list(prefs.struggling_subjects),
        )

    # ---------- productivity by hour ----------

    def _learn_productivity(self, profile: PatternProfile, completed: List[Task]) -> None:
        timed = [t for t in completed if t.completed_at is not None]
        if len(timed) < MIN_HOURLY_SAMPLES:
            return

        durations: Dict[int, List[int]] = defaultdict(list)
        difficulties: Dict[int, List[float]] = defaultdict(list)
        for task in timed:
            hour = task.completed_at.hour
            durations[hour].append(effective_duration(task))
            difficulties[hour].append(task_difficulty(task))

        # Difficulty handled per minute
        efficiency = {
            hour: statistics.mean(difficulties[hour]) / statistics.mean(durations[hour])
            for hour in durations
        }
        by_efficiency = sorted(efficiency, key=lambda h: (-efficiency[h], h))[:4]
        by_count = sorted(durations, key=lambda h: (-len(durations[h]), h))[:4]

        time_pattern = profile.time_pattern
        time_pattern.most_productive_hours = _unique(
            by_efficiency + by_count + time_pattern.most_productive_hours
        )[:MAX_PRODUCTIVE_HOURS]

        all_durations = [effective_duration(t) for t in timed]
        time_pattern.preferred_study_duration = max(1, round_half_up(statistics.mean(all_durations)))

    # ---------- difficulty ----------

    def _learn_difficulty(self, profile: PatternProfile, completed: List[Task]) -> None:
        if len(completed) < MIN_DIFFICULTY_SAMPLES:
            return

        ordered = _chronological(completed)
        levels = [task_difficulty(t) for t in ordered]
        difficulty = profile.difficulty_profile
        difficulty.average_task_difficulty = max(1.0, min(10.0, statistics.mean(levels)))

        recent = levels[-TREND_WINDOW:]
        older = levels[-2 * TREND_WINDOW:-TREND_WINDOW]
        if older and recent:
            delta = statistics.mean(recent) - statistics.mean(older)
            if delta >= TREND_THRESHOLD - 1e-9:
                difficulty.difficulty_trend = DifficultyTrend.INCREASING
            elif delta <= -TREND_THRESHOLD + 1e-9:
                difficulty.difficulty_trend = DifficultyTrend.DECREASING
            else:
                difficulty.difficulty_trend = DifficultyTrend.STABLE

        difficulty.adaptation_rate = clamp_unit(self._adaptation_rate(ordered))

    @staticmethod
    def _adaptation_rate(ordered: List[Task]) -> float:
        """How much faster the user gets at tasks of the same difficulty."""
        if len(ordered) < MIN_ADAPTATION_SAMPLES:
            return 0.5

        groups: Dict[int, List[Task]] = defaultdict(list)
        for task in ordered:
            groups[round_half_up(task_difficulty(task))].append(task)

        improvements = []
        for group in groups.values():
            if len(group) < MIN_GROUP_SIZE:
                continue
            split = math.ceil(len(group) / 2)
            early = statistics.mean(effective_duration(t) for t in group[:split])
            later = statistics.mean(effective_duration(t) for t in group[split:])
            improvements.append(max(0.0, (early - later) / early))

        if not improvements:
            return 0.5
        return min(1.0, statistics.mean(improvements))

    # ---------- subject performance ----------

    @staticmethod
    def _subject_performance(tasks: List[Task]) -> Dict[str, SubjectPerformance]:
        by_subject: Dict[str, List[Task]] = defaultdict(list)
        for task in _chronological(tasks):
            if task.subject:
                by_subject[task.subject].append(task)

        performance = {}
        for subject, subject_tasks in by_subject.items():
            completed = sum(1 for t in subject_tasks if t.completed)
            completion_rate = completed / len(subject_tasks)
            avg_minutes = statistics.mean(effective_duration(t) for t in subject_tasks)
            progression = [task_difficulty(t) for t in subject_tasks]

            performance[subject] = SubjectPerformance(
                completion_rate=clamp_unit(completion_rate),
                average_time_spent=float(avg_minutes),
                difficulty_progression=progression,
                performance_score=clamp_unit(
                    0.7 * completion_rate + 0.3 * (_subject_efficiency(progression, avg_minutes) / 10)
                ),
            )
        return performance

    def _learn_subject_performance(self, profile: PatternProfile, tasks: List[Task]) -> None:
        performance = self._subject_performance(tasks)
        struggling, preferred = _classify_subjects(performance)

        insights = profile.subject_insights
        insights.subject_performance = performance
        insights.struggling_subjects = _unique(struggling + insights.struggling_subjects)
        insights.preferred_subjects = _unique(preferred + insights.preferred_subjects)

    # ---------- consistency ----------

    def _learn_consistency(self, profile: PatternProfile, completed: List[Task]) -> None:
        timed = [t for t in completed if t.completed_at is not None]
        if len(timed) < MIN_CONSISTENCY_SAMPLES:
            return

        per_day: Dict[int, int] = defaultdict(int)
        for task in timed:
            per_day[task.completed_at.weekday()] += 1

        counts = list(per_day.values())
        mean = statistics.mean(counts)
        variance = statistics.pvariance(counts)

        time_pattern = profile.time_pattern
        time_pattern.consistency_score = clamp_unit(max(0.0, 1 - variance / (mean + 1)))
        peak = sorted(per_day, key=lambda day: (-per_day[day], day))[:3]
        time_pattern.peak_performance_days = [WEEKDAY_NAMES[day] for day in peak]

    # ---------- incremental learning ----------

    def learn_from_completion_data(
        self,
        completed_tasks: List[Task],
        now: Optional[datetime] = None,
    ) -> PatternProfile:
        """
        Refine the seeded profile with a batch of newly completed tasks.

        Batches smaller than five leave the profile unchanged. Returns a new
        profile; the seeded one is not modified.
        """
        base = self.profile or self.analyze(now=now)
        profile = base.model_copy(deep=True)

        completed = [t for t in completed_tasks if t.completed]
        if len(completed) < MIN_INCREMENTAL_SAMPLES:
            return profile

        # A profile without a recorded count still weighs as one minimum-sized batch
        prior_weight = base.total_tasks_analyzed or MIN_INCREMENTAL_SAMPLES

        self._relearn_productive_hours(profile, completed)
        self._merge_subject_performance(profile, completed)
        self._learn_difficulty(profile, completed)
        self._learn_consistency(profile, completed)
        self._blend_with_prior(profile, base, prior_weight, completed)

        profile.total_tasks_analyzed += len(completed)
        profile.data_quality = max(profile.data_quality, data_quality_for(profile.total_tasks_analyzed))
        if now is not None:
            profile.last_analyzed = now
        return profile

    @staticmethod
    def _blend_with_prior(
        profile: PatternProfile,
        prior: PatternProfile,
        prior_weight: int,
        completed: List[Task],
    ) -> None:
        """Weight batch-learned values against the values they replace, by task count."""
        n = len(completed)

        def blend(old: float, new: float) -> float:
            return (old * prior_weight + new * n) / (prior_weight + n)

        difficulty = profile.difficulty_profile
        difficulty.average_task_difficulty = max(1.0, min(10.0, blend(
            prior.difficulty_profile.average_task_difficulty, difficulty.average_task_difficulty
        )))
        if n < MIN_ADAPTATION_SAMPLES:
            difficulty.adaptation_rate = prior.difficulty_profile.adaptation_rate

        timed = [t for t in completed if t.completed_at is not None]
        if len(timed) >= MIN_CONSISTENCY_SAMPLES:
            time_pattern = profile.time_pattern
            time_pattern.consistency_score = clamp_unit(blend(
                prior.time_pattern.consistency_score, time_pattern.consistency_score
            ))
            time_pattern.peak_performance_days = _unique(
                time_pattern.peak_performance_days + prior.time_pattern.peak_performance_days
            )[:3]

    @staticmethod
    def _relearn_productive_hours(profile: PatternProfile, completed: List[Task]) -> None:
        per_hour: Dict[int, int] = defaultdict(int)
        for task in completed:
            if task.completed_at is not None:
                per_hour[task.completed_at.hour] += 1

        frequent = [h for h in per_hour if per_hour[h] >= MIN_HOUR_COMPLETIONS]
        learned = sorted(frequent, key=lambda h: (-per_hour[h], h))[:4]
        if learned:
            time_pattern = profile.time_pattern
            time_pattern.most_productive_hours = _unique(
                learned + time_pattern.most_productive_hours
            )[:MAX_PRODUCTIVE_HOURS]

    def _merge_subject_performance(self, profile: PatternProfile, completed: List[Task]) -> None:
        performance = self._subject_performance(completed)
        struggling, preferred = _classify_subjects(performance)

        insights = profile.subject_insights
        insights.subject_performance = {**insights.subject_performance, **performance}
        # A subject now performing well stops counting as struggling
        insights.struggling_subjects = _unique(
            struggling + [s for s in insights.struggling_subjects if s not in preferred]
        )
        insights.preferred_subjects = _unique(preferred + insights.preferred_subjects)


def _subject_efficiency(difficulties: List[float], avg_minutes: float) -> float:
    """Average difficulty handled per hour of work."""
    return statistics.mean(difficulties) / (avg_minutes / 60)


def _classify_subjects(performance: Dict[str, SubjectPerformance]):
    struggling: List[str] = []
    preferred: List[str] = []
    for subject, stats in performance.items():
        efficiency = _subject_efficiency(stats.difficulty_progression, stats.average_time_spent)
        if stats.completion_rate < 0.7 or efficiency < 0.05:
            struggling.append(subject)
        elif stats.completion_rate > 0.9 and efficiency > 0.1:
            preferred.append(subject)
    return struggling, preferred
