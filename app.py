# app.py
# =============================================================================
# Trainlog Stats API: calendar statistics & weekly medals
# (FastAPI + SQLAlchemy 2.x async, Pydantic v2)
# Read-only over the workout store: every summary is recomputed per request.
# v1.4.0: year view, distance pivot, strength volume, medal history export
# =============================================================================

from __future__ import annotations

import csv
import datetime as dt
import io
import logging
import os
import time
import traceback
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from pathlib import Path as OSPath
from typing import AsyncGenerator, Dict, List, Optional, Union

from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import (
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    asc,
    func,
    select,
    text,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

import stats
from stats import (
    InvalidPeriodError,
    Period,
    SetLog,
    StorageError,
    WorkoutRecord,
    WorkoutType,
)


# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
log = logging.getLogger("trainlog-stats")


# -----------------------------------------------------------------------------
# DB connection
# Priority:
#   1) DATABASE_URL (any SQLAlchemy URL; postgres:// is rewritten for asyncpg)
#   2) Cloud SQL (PostgreSQL) if CLOUD_SQL_CONNECTION_NAME is set
#   3) env TRAINLOG_DB (absolute path to trainlog.db)
#   4) ./data/trainlog.db
#   5) ./trainlog.db  (fallback)
# -----------------------------------------------------------------------------
_database_url = os.getenv("DATABASE_URL")
_cloud_sql = os.getenv("CLOUD_SQL_CONNECTION_NAME")  # e.g. project:region:instance
_db_user = os.getenv("DB_USER", "postgres")
_db_pass = os.getenv("DB_PASSWORD", "")
_db_name = os.getenv("DB_NAME", "trainlog")


def _async_url(url: str) -> str:
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix):]
    return url


if _database_url:
    DB_PATH = _async_url(_database_url)
    engine = create_async_engine(DB_PATH, echo=False, pool_pre_ping=True)
    log.info(f"Using DATABASE_URL (async): {engine.url.render_as_string(hide_password=True)}")
elif _cloud_sql:
    _socket_path = f"/cloudsql/{_cloud_sql}"
    DB_PATH = f"postgresql+asyncpg://{_db_user}:{_db_pass}@/{_db_name}?host={_socket_path}"
    engine = create_async_engine(DB_PATH, echo=False, pool_pre_ping=True)
    log.info(f"Using Cloud SQL (async): {_cloud_sql}")
else:
    env_db = os.getenv("TRAINLOG_DB")
    candidates = [
        env_db,
        str((OSPath(__file__).parent / "data" / "trainlog.db").resolve()),
        str((OSPath(__file__).parent / "trainlog.db").resolve()),
    ]
    DB_PATH = next((p for p in candidates if p and OSPath(p).exists()), candidates[-1])
    engine = create_async_engine(f"sqlite+aiosqlite:///{DB_PATH}", echo=False)
    log.info(f"Using SQLite (async): {DB_PATH}")

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


# -----------------------------------------------------------------------------
# SQLAlchemy models (workout store; written by the calendar CRUD service)
# -----------------------------------------------------------------------------
class Base(DeclarativeBase):
    pass


class Workout(Base):
    __tablename__ = "workout"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True, default=lambda: datetime.now(timezone.utc)
    )


class CyclingDetails(Base):
    __tablename__ = "cycling_details"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workout_id: Mapped[int] = mapped_column(
        ForeignKey("workout.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    duration: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)     # minutes
    distance: Mapped[Optional[float]] = mapped_column(Float, nullable=True)     # km
    elevation: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)    # m
    ride_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)


class WorkoutDetails(Base):
    """Generic measures for running, swimming, walking and custom sessions."""
    __tablename__ = "workout_details"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workout_id: Mapped[int] = mapped_column(
        ForeignKey("workout.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    duration: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    distance: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    elevation: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class Exercise(Base):
    __tablename__ = "exercise"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    muscle_group: Mapped[str] = mapped_column(String(50), nullable=False)


class ExerciseLog(Base):
    """One row per strength set."""
    __tablename__ = "exercise_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workout_id: Mapped[int] = mapped_column(
        ForeignKey("workout.id", ondelete="CASCADE"), nullable=False, index=True
    )
    exercise_id: Mapped[int] = mapped_column(
        ForeignKey("exercise.id", ondelete="CASCADE"), nullable=False
    )
    set_number: Mapped[int] = mapped_column(Integer, nullable=False)
    reps: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    weight: Mapped[Optional[float]] = mapped_column(Float, nullable=True)       # kg


# -----------------------------------------------------------------------------
# Startup: create tables
# -----------------------------------------------------------------------------
async def _init_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# -----------------------------------------------------------------------------
# Workout store (read side)
# -----------------------------------------------------------------------------
def _workout_type(label: str) -> WorkoutType:
    try:
        return WorkoutType.parse(label)
    except ValueError:
        log.warning(f"Unknown workout type {label!r}, counted as custom")
        return WorkoutType.CUSTOM


async def list_workouts(
    session: AsyncSession,
    owner_id: int,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> List[WorkoutRecord]:
    """Workouts of one owner in [start, end), measures coalesced across detail tables."""
    stmt = (
        select(
            Workout.id,
            Workout.owner_id,
            Workout.date,
            Workout.type,
            func.coalesce(CyclingDetails.distance, WorkoutDetails.distance),
            func.coalesce(CyclingDetails.elevation, WorkoutDetails.elevation),
            func.coalesce(CyclingDetails.duration, WorkoutDetails.duration),
        )
        .outerjoin(CyclingDetails, CyclingDetails.workout_id == Workout.id)
        .outerjoin(WorkoutDetails, WorkoutDetails.workout_id == Workout.id)
        .where(Workout.owner_id == owner_id)
    )
    if start:
        stmt = stmt.where(Workout.date >= start)
    if end:
        stmt = stmt.where(Workout.date < end)
    stmt = stmt.order_by(asc(Workout.date), asc(Workout.id))
    result = await session.execute(stmt)
    return [
        WorkoutRecord(
            id=wid,
            owner_id=oid,
            date=d,
            type=_workout_type(t),
            distance_km=float(dist) if dist is not None else None,
            elevation_m=int(elev) if elev is not None else None,
            duration_min=int(dur) if dur is not None else None,
        )
        for wid, oid, d, t, dist, elev, dur in result.all()
    ]


async def list_sets(
    session: AsyncSession,
    owner_id: int,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> List[SetLog]:
    stmt = (
        select(
            ExerciseLog.exercise_id,
            ExerciseLog.set_number,
            ExerciseLog.reps,
            ExerciseLog.weight,
            Workout.date,
            Workout.type,
        )
        .join(Workout, Workout.id == ExerciseLog.workout_id)
        .where(Workout.owner_id == owner_id)
    )
    if start:
        stmt = stmt.where(Workout.date >= start)
    if end:
        stmt = stmt.where(Workout.date < end)
    stmt = stmt.order_by(asc(Workout.date), asc(Workout.id), asc(ExerciseLog.set_number))
    result = await session.execute(stmt)
    return [
        SetLog(
            exercise_id=ex_id,
            set_number=set_no,
            reps=reps,
            weight=weight,
            workout_date=d,
            workout_type=_workout_type(t),
        )
        for ex_id, set_no, reps, weight, d, t in result.all()
    ]


async def _load_workouts(owner_id: int, period: Optional[Period] = None) -> List[WorkoutRecord]:
    """Snapshot of an owner's workouts; the whole history when period is None."""
    start, end = (period.start, period.end) if period else (None, None)
    try:
        async with async_session() as s:
            return await list_workouts(s, owner_id, start, end)
    except SQLAlchemyError as e:
        raise StorageError(f"Could not read workouts for owner {owner_id}") from e


async def _load_sets(owner_id: int, period: Period) -> List[SetLog]:
    try:
        async with async_session() as s:
            return await list_sets(s, owner_id, period.start, period.end)
    except SQLAlchemyError as e:
        raise StorageError(f"Could not read sets for owner {owner_id}") from e


# -----------------------------------------------------------------------------
# Pydantic schemas
# -----------------------------------------------------------------------------
class HealthOut(BaseModel):
    ok: bool = True
    db_connected: bool = True
    db_type: str
    timestamp: str


class GenericResponse(BaseModel):
    message: str


class DBInfoOut(BaseModel):
    db_type: str
    workout_rows: int


class PeriodSummaryOut(BaseModel):
    period: str
    total_count: int
    counts_by_type: Dict[str, int] = Field(default_factory=dict)
    total_distance_km: float
    total_elevation_m: int
    active_day_count: int
    model_config = ConfigDict(from_attributes=True)


class WeekProgressOut(BaseModel):
    week_start: date
    current_week_count: int
    total_medals: int
    model_config = ConfigDict(from_attributes=True)


class WeekBucketOut(BaseModel):
    week_start: date
    workout_count: int
    medals: int
    model_config = ConfigDict(from_attributes=True)


class MedalHistoryOut(BaseModel):
    week_start: date
    workout_count: int
    medals: int
    cumulative_medals: int
    model_config = ConfigDict(from_attributes=True)


class DistanceRowOut(BaseModel):
    period_key: Union[int, str]
    type: str
    distance_km: float
    model_config = ConfigDict(from_attributes=True)


class StrengthVolumeOut(BaseModel):
    period: str
    total_tonnage: float
    distinct_exercise_count: int
    total_set_count: int


class CsvExportOut(BaseModel):
    filename: str
    rows: int
    csv: str


# -----------------------------------------------------------------------------
# App (with lifespan)
# -----------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    await _init_db()
    yield
    await engine.dispose()

app = FastAPI(
    title="Trainlog Stats API",
    description="Monthly/yearly training statistics and weekly medals for the workout calendar.",
    version="1.4.0",
    lifespan=lifespan,
)


# -----------------------------------------------------------------------------
# Exception handlers
# -----------------------------------------------------------------------------
@app.exception_handler(StorageError)
async def _storage_error_handler(request: Request, exc: StorageError):
    log.error(f"Storage error on {request.method} {request.url.path}: {exc} ({exc.__cause__})")
    return JSONResponse(status_code=503, content={"detail": "Workout store unavailable"})


# Global exception handler: log full traceback so Cloud Run logs show the cause
@app.exception_handler(Exception)
async def _global_exception_handler(request: Request, exc: Exception):
    tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    log.error(f"Unhandled error on {request.method} {request.url.path}: {exc}\n{tb}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# -----------------------------------------------------------------------------
# Rate limiting middleware (simple in-memory, per-IP)
# -----------------------------------------------------------------------------
_rate_limit_store: Dict[str, List[float]] = defaultdict(list)
RATE_LIMIT_REQUESTS = int(os.getenv("RATE_LIMIT_REQUESTS", "60"))
RATE_LIMIT_WINDOW = int(os.getenv("RATE_LIMIT_WINDOW", "60"))  # seconds
RATE_LIMIT_MAX_CLIENTS = int(os.getenv("RATE_LIMIT_MAX_CLIENTS", "1000"))


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    client_ip = request.client.host if request.client else "unknown"
    now = time.time()
    window_start = now - RATE_LIMIT_WINDOW

    _rate_limit_store[client_ip] = [
        t for t in _rate_limit_store[client_ip] if t > window_start
    ]

    if len(_rate_limit_store[client_ip]) >= RATE_LIMIT_REQUESTS:
        return Response(
            content='{"detail":"Rate limit exceeded. Try again later."}',
            status_code=429,
            media_type="application/json",
        )

    _rate_limit_store[client_ip].append(now)
    # Prune stale IPs to prevent memory leak
    if len(_rate_limit_store) > RATE_LIMIT_MAX_CLIENTS:
        stale = [ip for ip, ts in _rate_limit_store.items()
                 if not ts or ts[-1] < window_start]
        for ip in stale:
            del _rate_limit_store[ip]
    response = await call_next(request)
    response.headers["X-RateLimit-Limit"] = str(RATE_LIMIT_REQUESTS)
    response.headers["X-RateLimit-Remaining"] = str(
        RATE_LIMIT_REQUESTS - len(_rate_limit_store[client_ip])
    )
    return response


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _period_or_400(month: Optional[str], year: Optional[str]) -> Period:
    try:
        return stats.resolve_period(month=month, year=year)
    except InvalidPeriodError as e:
        raise HTTPException(400, str(e))


def _db_type() -> str:
    """Return a safe description of the DB type (no credentials)."""
    if _database_url:
        return f"{engine.dialect.name} (DATABASE_URL)"
    if _cloud_sql:
        return f"Cloud SQL PostgreSQL ({_cloud_sql})"
    return "SQLite"


# -----------------------------------------------------------------------------
# Health / Root
# -----------------------------------------------------------------------------
@app.get("/health", response_model=HealthOut)
async def health() -> HealthOut:
    db_connected = False
    try:
        async with async_session() as s:
            await s.execute(text("SELECT 1"))
            db_connected = True
    except Exception as e:
        log.error(f"Health check DB query failed: {e}")
    return HealthOut(
        ok=db_connected,
        db_connected=db_connected,
        db_type=_db_type(),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@app.get("/", response_model=GenericResponse)
async def root() -> GenericResponse:
    return GenericResponse(message="Trainlog Stats API v1.4 is running")


# -----------------------------------------------------------------------------
# Debug
# -----------------------------------------------------------------------------
@app.get("/debug/dbinfo", response_model=DBInfoOut)
async def dbinfo() -> DBInfoOut:
    async with async_session() as s:
        result = await s.execute(select(func.count()).select_from(Workout))
        workout_rows = result.scalar_one()
    return DBInfoOut(db_type=_db_type(), workout_rows=int(workout_rows))


# -----------------------------------------------------------------------------
# Stats: period views
# -----------------------------------------------------------------------------
@app.get("/stats/summary", response_model=PeriodSummaryOut)
async def stats_summary(
    owner_id: int = Query(..., ge=1),
    month: Optional[str] = Query(None, description="YYYY-MM"),
    year: Optional[str] = Query(None, description="YYYY"),
) -> PeriodSummaryOut:
    period = _period_or_400(month, year)
    records = await _load_workouts(owner_id, period)
    return PeriodSummaryOut.model_validate(stats.period_summary(records, period))


@app.get("/stats/distance", response_model=List[DistanceRowOut])
async def stats_distance(
    owner_id: int = Query(..., ge=1),
    month: Optional[str] = Query(None, description="YYYY-MM"),
    year: Optional[str] = Query(None, description="YYYY"),
) -> List[DistanceRowOut]:
    """Distance per week (month view, ISO year*100+week) or per month (year view)."""
    period = _period_or_400(month, year)
    records = await _load_workouts(owner_id, period)
    return [
        DistanceRowOut.model_validate(row)
        for row in stats.distance_by_subperiod(records, period)
    ]


@app.get("/stats/strength_volume", response_model=StrengthVolumeOut)
async def stats_strength_volume(
    owner_id: int = Query(..., ge=1),
    month: Optional[str] = Query(None, description="YYYY-MM"),
    year: Optional[str] = Query(None, description="YYYY"),
) -> StrengthVolumeOut:
    period = _period_or_400(month, year)
    sets = await _load_sets(owner_id, period)
    volume = stats.strength_volume(sets, period)
    return StrengthVolumeOut(
        period=period.label,
        total_tonnage=volume.total_tonnage,
        distinct_exercise_count=volume.distinct_exercise_count,
        total_set_count=volume.total_set_count,
    )


# -----------------------------------------------------------------------------
# Stats: weekly medals (always over the full history)
# -----------------------------------------------------------------------------
@app.get("/stats/weekly_progress", response_model=WeekProgressOut)
async def stats_weekly_progress(owner_id: int = Query(..., ge=1)) -> WeekProgressOut:
    records = await _load_workouts(owner_id)
    progress = stats.current_week_progress(records, date.today())
    return WeekProgressOut.model_validate(progress)


@app.get("/stats/weekly_medals", response_model=List[WeekBucketOut])
async def stats_weekly_medals(
    owner_id: int = Query(..., ge=1),
    month: Optional[str] = Query(None, description="YYYY-MM"),
) -> List[WeekBucketOut]:
    if month is None:
        raise HTTPException(400, "month query param required (YYYY-MM)")
    period = _period_or_400(month, None)
    records = await _load_workouts(owner_id)
    return [WeekBucketOut.model_validate(b) for b in stats.weekly_medals(records, period)]


@app.get("/stats/medal_history", response_model=List[MedalHistoryOut])
async def stats_medal_history(
    owner_id: int = Query(..., ge=1),
    fill_gaps: bool = Query(False, description="include weeks without workouts"),
) -> List[MedalHistoryOut]:
    records = await _load_workouts(owner_id)
    return [
        MedalHistoryOut.model_validate(e)
        for e in stats.medal_history(records, fill_gaps=fill_gaps)
    ]


# -----------------------------------------------------------------------------
# Export CSV
# -----------------------------------------------------------------------------
@app.get("/export/medal_history", response_model=CsvExportOut)
async def export_medal_history(
    owner_id: int = Query(..., ge=1),
    fill_gaps: bool = Query(False),
) -> CsvExportOut:
    records = await _load_workouts(owner_id)
    history = stats.medal_history(records, fill_gaps=fill_gaps)

    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(["week_start", "workout_count", "medals", "cumulative_medals"])
    for e in history:
        writer.writerow([
            e.week_start.isoformat(), e.workout_count, e.medals, e.cumulative_medals,
        ])

    return CsvExportOut(
        filename=f"medal_history_{owner_id}.csv", rows=len(history), csv=buf.getvalue()
    )
