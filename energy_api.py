#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Building Energy API (Buildings • Series • Grid breakdown)

Serves dashboard aggregates from energy_data.db, which energy_ingest fills
from the metadata / smart meter / source breakdown CSVs. On startup the
schema is created and a full CSV refresh runs before the first request is
accepted.

RUN:
  pip install -e .
  python -m uvicorn energy_api:app --host 0.0.0.0 --port 3001

NOTES:
- Swagger UI: http://127.0.0.1:3001/docs
- Errors come back as {"error": "..."} (400 bad input, 500 store failure).
- POST /api/admin/reload re-runs the CSV refresh without a restart.
"""

import os
import re
import csv
import io
import sqlite3
import threading
from contextlib import asynccontextmanager
from datetime import datetime

from typing import List, Optional, Dict, Any

from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

import energy_queries as queries
from energy_ingest import connect, default_sources, ensure_schema, load_all, log

# --------------------- CONFIG ---------------------

DB_PATH = os.environ.get("DB_PATH", "energy_data.db")
DEFAULT_YEAR = os.environ.get("DEFAULT_YEAR", "2021")
BREAKDOWN_LIMIT = int(os.environ.get("BREAKDOWN_LIMIT", "24"))
INGEST_ON_STARTUP = os.environ.get("INGEST_ON_STARTUP", "1").lower() not in ("0", "false", "no")

# --------------------- STARTUP --------------------

@asynccontextmanager
async def lifespan(_app: FastAPI):
    # schema problems are fatal: let them propagate so the server never starts
    conn = connect(DB_PATH)
    try:
        ensure_schema(conn)
        if INGEST_ON_STARTUP:
            try:
                load_all(conn, default_sources())
            except sqlite3.Error as e:
                log("ERROR", f"[api] startup refresh aborted, serving existing data: {e}")
    finally:
        conn.close()
    log("INFO", f"[api] ready. Database: {DB_PATH}")
    yield

# --------------------- APP ------------------------

app = FastAPI(
    title="Building Energy API",
    version="1.0.0",
    description="Per-building energy totals, monthly/daily/hourly series and grid source breakdown",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # tighten for prod
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_reload_lock = threading.Lock()

# --------------------- MODELS ---------------------

class BuildingRow(BaseModel):
    cpe: str
    lat: Optional[float] = None
    lon: Optional[float] = None
    totalarea: Optional[float] = None
    name: Optional[str] = None
    fulladdress: Optional[str] = None
    annual_energy: float

class BuildingYearRow(BaseModel):
    cpe: str
    name: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None
    totalarea: Optional[float] = None
    annual_energy: float

class BreakdownRow(BaseModel):
    id: int
    timestamp: Optional[str] = None
    renewable_biomass: Optional[float] = None
    renewable_hydro: Optional[float] = None
    renewable_solar: Optional[float] = None
    renewable_wind: Optional[float] = None
    renewable_geothermal: Optional[float] = None
    renewable_otherrenewable: Optional[float] = None
    renewable: Optional[float] = None
    nonrenewable_coal: Optional[float] = None
    nonrenewable_gas: Optional[float] = None
    nonrenewable_nuclear: Optional[float] = None
    nonrenewable_oil: Optional[float] = None
    nonrenewable: Optional[float] = None
    hydropumpedstorage: Optional[float] = None
    unknown: Optional[float] = None

class MetadataSample(BaseModel):
    count: int
    sample: List[Dict[str, Any]]
    columns: List[str]

class SourceReport(BaseModel):
    status: str
    table: str
    location: Optional[str] = None
    rows: int
    rejected: int
    error: Optional[str] = None

# --------------------- ERRORS ---------------------

@app.exception_handler(StarletteHTTPException)
async def http_error(_request: Request, exc: StarletteHTTPException):
    if exc.status_code < 500:
        log("DEBUG", f"[api] {exc.status_code}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})

@app.exception_handler(RequestValidationError)
async def validation_error(_request: Request, exc: RequestValidationError):
    msg = "; ".join(
        f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg')}" for e in exc.errors()
    )
    log("DEBUG", f"[api] 400: {msg}")
    return JSONResponse(status_code=400, content={"error": msg or "Invalid request"})

@app.exception_handler(sqlite3.Error)
async def store_error(request: Request, exc: sqlite3.Error):
    log("ERROR", f"[api] {request.url.path}: query failed: {exc}")
    return JSONResponse(status_code=500, content={"error": str(exc)})

# --------------------- DB UTILS -------------------

def get_db() -> sqlite3.Connection:
    try:
        return connect(DB_PATH)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"DB connect failed: {e}")

def respond_csv(rows: List[Dict[str, Any]], filename: str = "export.csv") -> Response:
    if not rows:
        return Response(content="", media_type="text/csv")
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=list(rows[0].keys()))
    writer.writeheader()
    writer.writerows(rows)
    return Response(
        content=buf.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )

# --------------------- PARAMS ---------------------

_year_re = re.compile(r"^\d{4}$")
_short_re = re.compile(r"^\d{1,2}$")

def require_year(year: Optional[str]) -> str:
    if not year:
        raise HTTPException(status_code=400, detail="year is required (YYYY)")
    if not _year_re.match(year):
        raise HTTPException(status_code=400, detail=f"Invalid year (use YYYY): {year!r}")
    return year

def resolve_month(month: Optional[str], year: Optional[str]) -> str:
    """
    'YYYY-MM' as given, or a bare 'MM' combined with year.
    Returns a normalized 'YYYY-MM'.
    """
    if not month:
        raise HTTPException(status_code=400, detail="month is required (YYYY-MM, or MM together with year)")
    if _short_re.match(month):
        month = f"{require_year(year)}-{int(month):02d}"
    try:
        d = datetime.strptime(month, "%Y-%m")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid month format (use YYYY-MM): {e}")
    return f"{d.year:04d}-{d.month:02d}"

def resolve_day(day: Optional[str], year: Optional[str], month: Optional[str]) -> str:
    """
    'YYYY-MM-DD' as given, or a bare 'DD' combined with month (and year).
    Returns a normalized 'YYYY-MM-DD'.
    """
    if not day:
        raise HTTPException(status_code=400, detail="day is required (YYYY-MM-DD, or DD together with month)")
    if _short_re.match(day):
        day = f"{resolve_month(month, year)}-{int(day):02d}"
    try:
        d = datetime.strptime(day, "%Y-%m-%d")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid date format (use YYYY-MM-DD): {e}")
    return f"{d.year:04d}-{d.month:02d}-{d.day:02d}"

def series_window(period: str, year: Optional[str], month: Optional[str], day: Optional[str]) -> str:
    if period == "monthly":
        return require_year(year)
    if period == "daily":
        return resolve_month(month, year)
    if period == "hourly":
        return resolve_day(day, year, month)
    raise HTTPException(status_code=400, detail="Invalid period")

# --------------------- ENDPOINTS ------------------

@app.get("/health")
def health():
    conn = get_db()
    try:
        conn.execute("SELECT 1")
        return {"ok": True}
    finally:
        conn.close()

@app.get("/api/buildings", response_model=List[BuildingRow])
def buildings(format: Optional[str] = Query(None, description="csv for CSV export")):
    """Every building with its total metered energy, highest consumers first."""
    conn = get_db()
    try:
        rows = queries.building_totals(conn)
        log("DEBUG", f"[api] retrieved {len(rows)} buildings")
        if format == "csv":
            return respond_csv(rows, filename="buildings.csv")
        return rows
    finally:
        conn.close()

@app.get("/api/energy/{cpe}/{period}")
def energy_series(
    cpe: str,
    period: str,
    year: Optional[str] = Query(None, description="YYYY (monthly)"),
    month: Optional[str] = Query(None, description="YYYY-MM, or MM with year (daily)"),
    day: Optional[str] = Query(None, description="YYYY-MM-DD, or DD with month (hourly)"),
    format: Optional[str] = Query(None, description="csv for CSV export"),
):
    """
    monthly -> [{month, total_energy}] for ?year
    daily   -> [{day, total_energy}]   for ?month
    hourly  -> [{hour, total_energy}]  for ?day
    """
    if period not in queries.SERIES_PERIODS:
        raise HTTPException(status_code=400, detail="Invalid period")
    window = series_window(period, year, month, day)
    conn = get_db()
    try:
        rows = queries.energy_series(conn, cpe, period, window)
        if format == "csv":
            return respond_csv(rows, filename=f"{cpe}_{period}_{window}.csv")
        return rows
    finally:
        conn.close()

@app.get("/api/energy-breakdown", response_model=List[BreakdownRow])
def energy_breakdown(
    timestamp: Optional[str] = Query(None, description="timestamp prefix, e.g. 2021-03-01"),
):
    conn = get_db()
    try:
        return queries.energy_breakdown(conn, timestamp, limit=BREAKDOWN_LIMIT)
    finally:
        conn.close()

@app.get("/api/buildings-energy", response_model=List[BuildingYearRow])
def buildings_energy(
    year: Optional[str] = Query(None, description=f"YYYY, defaults to {DEFAULT_YEAR}"),
    format: Optional[str] = Query(None, description="csv for CSV export"),
):
    y = require_year(year or DEFAULT_YEAR)
    conn = get_db()
    try:
        rows = queries.buildings_energy_for_year(conn, y)
        if format == "csv":
            return respond_csv(rows, filename=f"buildings_energy_{y}.csv")
        return rows
    finally:
        conn.close()

@app.get("/api/debug/metadata", response_model=MetadataSample)
def debug_metadata():
    conn = get_db()
    try:
        return queries.metadata_sample(conn)
    finally:
        conn.close()

@app.post("/api/admin/reload", response_model=Dict[str, SourceReport])
def admin_reload():
    if not _reload_lock.acquire(blocking=False):
        raise HTTPException(status_code=409, detail="A reload is already running")
    try:
        conn = get_db()
        try:
            ensure_schema(conn)
            return load_all(conn, default_sources())
        finally:
            conn.close()
    finally:
        _reload_lock.release()
