"""
Shared fixtures: an in-memory stand-in for the asyncpg Database wrapper
"""

import copy
import json
import os
from datetime import datetime, timezone
from itertools import count

# Keep test runs from writing rotating log files
os.environ.setdefault("LOG_FILE_ENABLED", "false")

import pytest

from config import SchedulingConfig, reload_config


UTC = timezone.utc


def _loads(value):
    return json.loads(value) if isinstance(value, (str, bytes)) else value


class FakeDatabase:
    """Routes the queries issued by database.py and schedule_store.py onto dict tables."""

    def __init__(self):
        self.connected = True
        self.fail_on = set()
        self.queries = []
        self._ids = count(1)
        self.tables = {
            "tasks": [],
            "user_timetables": [],
            "profiles": [],
            "user_ai_patterns": [],
            "current_schedules": [],
            "schedule_history": [],
            "scheduled_tasks": [],
            "system_logs": [],
        }

    # ---------- helpers ----------

    def _record(self, query: str):
        self.queries.append(query)
        for fragment in self.fail_on:
            if fragment in query:
                raise RuntimeError(f"simulated failure on {fragment!r}")

    def _rows(self, table: str, user_id: str):
        return [r for r in self.tables[table] if r.get("user_id") == user_id]

    def count(self, fragment: str) -> int:
        return sum(1 for q in self.queries if fragment in q)

    def add_task(self, user_id: str = "u1", **fields) -> dict:
        row = {
            "user_id": user_id,
            "id": fields.pop("id", f"task-{next(self._ids)}"),
            "title": fields.pop("title", "Task"),
            "completed": False,
        }
        row.update(fields)
        self.tables["tasks"].append(row)
        return row

    # ---------- Database interface ----------

    async def fetch(self, query: str, *args):
        self._record(query)
        user_id = args[0] if args else None

        if "FROM tasks" in query:
            rows = self._rows("tasks", user_id)
            if "completed = false" in query:
                return [copy.deepcopy(r) for r in rows if not r.get("completed")]
            done = [r for r in rows if r.get("completed")]
            if "COALESCE(completed_at, updated_at) > $2" in query:
                since = args[1]
                done = [r for r in done if (r.get("completed_at") or r.get("updated_at")) > since]
                return [copy.deepcopy(r) for r in done]
            done.sort(key=lambda r: r.get("updated_at") or datetime.min.replace(tzinfo=UTC), reverse=True)
            return [copy.deepcopy(r) for r in done[:args[1]]]

        if "FROM user_timetables" in query:
            return [copy.deepcopy(r) for r in self._rows("user_timetables", user_id)]

        if "FROM schedule_history" in query:
            rows = [r for r in self._rows("schedule_history", user_id) if r["created_at"] >= args[1]]
            rows.sort(key=lambda r: (r["created_at"], r["id"]), reverse=True)
            return [copy.deepcopy(r) for r in rows]

        if "FROM scheduled_tasks" in query:
            rows = self._rows("scheduled_tasks", user_id)
            if "created_at >= $2" in query:
                return [copy.deepcopy(r) for r in rows if r["created_at"] >= args[1]]
            rows = sorted(rows, key=lambda r: r["created_at"], reverse=True)
            return [copy.deepcopy(r) for r in rows[:args[1]]]

        raise AssertionError(f"unexpected fetch: {query}")

    async def fetch_one(self, query: str, *args):
        self._record(query)
        if "SELECT 1" in query:
            return {"ok": 1}
        for table in ("profiles", "user_ai_patterns", "current_schedules"):
            if f"FROM {table}" in query:
                rows = self._rows(table, args[0])
                return copy.deepcopy(rows[0]) if rows else None
        raise AssertionError(f"unexpected fetch_one: {query}")

    async def execute(self, query: str, *args):
        self._record(query)
        now = datetime.now(UTC)

        if "INTO schedule_history" in query:
            self.tables["schedule_history"].append({
                "id": next(self._ids),
                "user_id": args[0],
                "schedule": args[1],
                "metadata": args[2],
                "created_at": now,
            })
            return "INSERT 0 1"

        if "INTO system_logs" in query:
            self.tables["system_logs"].append({"level": args[0], "message": args[1], "context": args[2]})
            return "INSERT 0 1"

        if "UPDATE scheduled_tasks" in query:
            user_id, task_id = args[0], args[1]
            updates = dict(zip(("actual_start", "actual_end", "was_rescheduled", "reschedule_reason"), args[2:6]))
            touched = 0
            for row in self._rows("scheduled_tasks", user_id):
                if row["task_id"] != task_id:
                    continue
                for key, value in updates.items():
                    if value is not None:
                        row[key] = value
                touched += 1
            return f"UPDATE {touched}"

        if "DELETE FROM scheduled_tasks" in query:
            user_id, cutoff = args
            keep = [
                r for r in self.tables["scheduled_tasks"]
                if not (r["user_id"] == user_id and r["created_at"] < cutoff)
            ]
            deleted = len(self.tables["scheduled_tasks"]) - len(keep)
            self.tables["scheduled_tasks"] = keep
            return f"DELETE {deleted}"

        raise AssertionError(f"unexpected execute: {query}")

    async def execute_many(self, query: str, args):
        self._record(query)
        assert "INTO scheduled_tasks" in query
        now = datetime.now(UTC)
        for user_id, task_id, subject, start, end, confidence, reasoning in args:
            self.tables["scheduled_tasks"].append({
                "id": next(self._ids),
                "user_id": user_id,
                "task_id": task_id,
                "subject": subject,
                "scheduled_start": start,
                "scheduled_end": end,
                "actual_start": None,
                "actual_end": None,
                "confidence_score": confidence,
                "reasoning": reasoning,
                "was_rescheduled": False,
                "reschedule_reason": None,
                "created_at": now,
            })

    async def execute_returning(self, query: str, *args):
        self._record(query)
        now = datetime.now(UTC)

        if "INTO current_schedules" in query:
            user_id, schedule, metadata = args
            self.tables["current_schedules"] = [
                r for r in self.tables["current_schedules"] if r["user_id"] != user_id
            ]
            self.tables["current_schedules"].append({
                "user_id": user_id, "schedule": schedule, "metadata": metadata, "created_at": now,
            })
            return {"created_at": now}

        if "INTO user_ai_patterns" in query:
            user_id, pattern_data, preferences, sources, analyzed_at = args
            existing = self._rows("user_ai_patterns", user_id)
            merged = dict(existing[0]["pattern_data"]) if existing else {}
            merged.update(_loads(pattern_data))
            row = {
                "user_id": user_id,
                "pattern_data": merged,
                "preferences": _loads(preferences),
                "data_sources": _loads(sources),
                "last_analyzed_at": analyzed_at,
                "analysis_version": 2,
            }
            self.tables["user_ai_patterns"] = [
                r for r in self.tables["user_ai_patterns"] if r["user_id"] != user_id
            ] + [row]
            return {"user_id": user_id, "last_analyzed_at": analyzed_at}

        raise AssertionError(f"unexpected execute_returning: {query}")


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def scheduling_config():
    return SchedulingConfig(timezone="UTC")


@pytest.fixture
def clean_env(monkeypatch):
    """Drop deployment settings so each test starts from defaults."""
    for name in ("AUTH_VERIFY_URL", "AUTH_ALLOW_DEV_HEADER", "SCHEDULE_SLOT_MINUTES", "DATABASE_URL"):
        monkeypatch.delenv(name, raising=False)
    reload_config()
    yield monkeypatch
    reload_config()
