"""
StudySpark Scheduling Backend - FastAPI Backend
AI schedule generation, retrieval, analytics and pattern refinement
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query, Depends
from fastapi.middleware.cors import CORSMiddleware

from auth import get_current_user_id
from config import get_database_config, get_config_summary
from database import db, Database, ensure_schedule_tables, log_system
from logger import get_logger
from models import (
    ScheduleRequest, ScheduleResponse, CurrentScheduleResponse, AnalyticsResponse,
    TaskProgressUpdate, RefineResponse, HealthStatus,
)
from schedule_service import ScheduleService, DataFetchError

logger = get_logger(__name__)

APP_VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    # Startup
    await db.connect()
    if get_database_config().create_schema:
        await ensure_schedule_tables()

    await log_system("info", "Server started", {"version": APP_VERSION, "config": get_config_summary()})
    yield
    # Shutdown
    await log_system("info", "Server shutting down")
    await db.disconnect()


app = FastAPI(
    title="StudySpark Scheduling",
    description="AI study scheduling: pattern learning, smart slot allocation and schedule tracking",
    version=APP_VERSION,
    lifespan=lifespan
)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_database() -> Database:
    return db


def get_schedule_service() -> ScheduleService:
    return ScheduleService(db)


# ============================================
# HEALTH & STATUS
# ============================================

@app.get("/health", response_model=HealthStatus)
@app.get("/api/health", response_model=HealthStatus)
async def health_check(database: Database = Depends(get_database)):
    """Check API and database health."""
    database_status = "disconnected"
    if database.connected:
        try:
            await database.fetch_one("SELECT 1 AS ok")
            database_status = "connected"
        except Exception as e:
            logger.warning(f"Health check query failed: {e}")
            database_status = "error"

    return HealthStatus(
        status="healthy" if database_status == "connected" else "degraded",
        version=APP_VERSION,
        database=database_status
    )


# ============================================
# SCHEDULE ENDPOINTS
# ============================================

@app.post("/api/ai/schedule", response_model=ScheduleResponse)
async def generate_schedule(
    request: ScheduleRequest,
    user_id: str = Depends(get_current_user_id),
    service: ScheduleService = Depends(get_schedule_service),
):
    """Generate a schedule from pending tasks, history, timetable and learned patterns."""
    try:
        return await service.generate(user_id, request)
    except DataFetchError:
        raise HTTPException(status_code=500, detail="Failed to generate schedule")
    except Exception as e:
        logger.exception(f"Schedule generation error: {e}")
        raise HTTPException(status_code=500, detail="Failed to generate schedule")


@app.get("/api/ai/schedule", response_model=CurrentScheduleResponse)
async def get_schedule(
    include_history: bool = False,
    user_id: str = Depends(get_current_user_id),
    service: ScheduleService = Depends(get_schedule_service),
):
    """Current schedule, optional recent history, and the stored pattern profile."""
    try:
        return await service.get_current(user_id, include_history)
    except Exception as e:
        logger.error(f"Schedule fetch error: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch schedule")


@app.get("/api/ai/schedule/analytics", response_model=AnalyticsResponse)
async def get_schedule_analytics(
    days: int = Query(default=30, ge=1, le=365),
    user_id: str = Depends(get_current_user_id),
    service: ScheduleService = Depends(get_schedule_service),
):
    """Scheduling analytics with recommendations."""
    try:
        return await service.analytics(user_id, days)
    except Exception as e:
        logger.error(f"Error fetching scheduling analytics: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch analytics")


@app.patch("/api/ai/schedule/tasks/{task_id}/progress")
async def update_task_progress(
    task_id: str,
    update: TaskProgressUpdate,
    user_id: str = Depends(get_current_user_id),
    service: ScheduleService = Depends(get_schedule_service),
):
    """Record when a scheduled task actually started or finished."""
    try:
        updated = await service.store.update_task_progress(user_id, task_id, update)
    except Exception as e:
        logger.error(f"Error updating task progress: {e}")
        raise HTTPException(status_code=500, detail="Failed to update task progress")

    if not updated:
        raise HTTPException(status_code=404, detail="Scheduled task not found")
    return {"success": True, "updated": updated}


@app.post("/api/ai/patterns/refine", response_model=RefineResponse)
async def refine_patterns(
    user_id: str = Depends(get_current_user_id),
    service: ScheduleService = Depends(get_schedule_service),
):
    """Fold recently completed tasks into the stored pattern profile."""
    try:
        return await service.refine_patterns(user_id)
    except Exception as e:
        logger.error(f"Pattern refinement error: {e}")
        raise HTTPException(status_code=500, detail="Failed to refine patterns")


# ============================================
# RUN SERVER
# ============================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
