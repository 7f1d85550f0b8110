#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Building energy CSV loader (full refresh)

Reads three CSV sources and rewrites the SQLite store the API serves from:

  metadata(cpe PRIMARY KEY, lat, lon, totalarea, name, fulladdress)
  smart_meter_data(id, cpe, timestamp, active_energy)
  energy_breakdown(id, timestamp, renewable_* ..., nonrenewable_* ..., hydropumpedstorage, unknown)

Every run clears and repopulates all three tables inside one transaction
(one SAVEPOINT per source), so readers see either the previous dataset or
the new one. A source that is missing is skipped; a source that fails keeps
its previous rows and does not stop the others. Malformed CSV rows, and rows
whose key fields hold undecodable bytes, are skipped one at a time.

RUN:
  python energy_ingest.py

Env vars (optional):
  DB_PATH            (default energy_data.db)
  DATA_DIR           (default data)
  METADATA_CSV       (default $DATA_DIR/metadata.csv)
  SMART_METER_CSV    (default $DATA_DIR/smart_meter.csv)
  BREAKDOWN_CSV      (default $DATA_DIR/energy_source_breakdown.csv)
                     Any of the three may also be an http(s):// URL.
  METER_ROW_CAP      (default 10000, <= 0 for no cap)
  BREAKDOWN_ROW_CAP  (default 1000, <= 0 for no cap)
  INSERT_BATCH_SIZE  (default 500)
  REQUEST_TIMEOUT    (default 60)
  LOG_LEVEL          (DEBUG|INFO|WARN|ERROR, default INFO)
"""

import os
import re
import io
import csv
import sys
import math
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, NamedTuple, Optional, Sequence, TextIO, Tuple

import requests

# --------------------- CONFIG ---------------------

DB_PATH = os.environ.get("DB_PATH", "energy_data.db")
DATA_DIR = os.environ.get("DATA_DIR", "data")
METADATA_CSV = os.environ.get("METADATA_CSV", os.path.join(DATA_DIR, "metadata.csv"))
SMART_METER_CSV = os.environ.get("SMART_METER_CSV", os.path.join(DATA_DIR, "smart_meter.csv"))
BREAKDOWN_CSV = os.environ.get("BREAKDOWN_CSV", os.path.join(DATA_DIR, "energy_source_breakdown.csv"))

METER_ROW_CAP = int(os.environ.get("METER_ROW_CAP", "10000"))
BREAKDOWN_ROW_CAP = int(os.environ.get("BREAKDOWN_ROW_CAP", "1000"))
INSERT_BATCH_SIZE = int(os.environ.get("INSERT_BATCH_SIZE", "500"))
REQUEST_TIMEOUT = int(os.environ.get("REQUEST_TIMEOUT", "60"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

SOURCE_NAMES = ("metadata", "meter", "breakdown")

BREAKDOWN_COLUMNS: List[str] = [
    "renewable_biomass",
    "renewable_hydro",
    "renewable_solar",
    "renewable_wind",
    "renewable_geothermal",
    "renewable_otherrenewable",
    "renewable",
    "nonrenewable_coal",
    "nonrenewable_gas",
    "nonrenewable_nuclear",
    "nonrenewable_oil",
    "nonrenewable",
    "hydropumpedstorage",
    "unknown",
]

# --------------------- LOGGING --------------------

def log(level: str, msg: str) -> None:
    wanted = ["DEBUG", "INFO", "WARN", "ERROR"]
    if level not in wanted:
        level = "INFO"
    threshold = LOG_LEVEL if LOG_LEVEL in wanted else "INFO"
    if wanted.index(level) >= wanted.index(threshold):
        print(f"[{datetime.now().isoformat(timespec='seconds')}] {level}: {msg}", flush=True)


class IngestionError(Exception):
    """A source could not be read (bad stream, bad header, transport error)."""


# --------------------- DB -------------------------

def connect(db_path: str = DB_PATH) -> sqlite3.Connection:
    # isolation_level=None: transactions are opened explicitly by load_all()
    return sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)


def ensure_schema(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    cur.execute("PRAGMA journal_mode=WAL;")
    cur.execute("PRAGMA synchronous=NORMAL;")

    cur.execute("""
        CREATE TABLE IF NOT EXISTS metadata(
          cpe         TEXT PRIMARY KEY,
          lat         REAL,
          lon         REAL,
          totalarea   REAL,
          name        TEXT,
          fulladdress TEXT
        )
    """)
    # cpe is not a foreign key: readings for unknown buildings are kept
    cur.execute("""
        CREATE TABLE IF NOT EXISTS smart_meter_data(
          id            INTEGER PRIMARY KEY AUTOINCREMENT,
          cpe           TEXT,
          timestamp     TEXT,
          active_energy REAL
        )
    """)
    component_cols = ",\n          ".join(f"{c} REAL" for c in BREAKDOWN_COLUMNS)
    cur.execute(f"""
        CREATE TABLE IF NOT EXISTS energy_breakdown(
          id        INTEGER PRIMARY KEY AUTOINCREMENT,
          timestamp TEXT,
          {component_cols}
        )
    """)

    cur.execute("CREATE INDEX IF NOT EXISTS idx_smart_meter_cpe ON smart_meter_data(cpe)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_smart_meter_timestamp ON smart_meter_data(timestamp)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_breakdown_timestamp ON energy_breakdown(timestamp)")
    log("DEBUG", "[schema] tables and indexes present")


# --------------------- CSV NORMALIZER -------------

TEXT = "text"
NUMBER = "number"


class ColumnDef(NamedTuple):
    name: str
    kind: str = TEXT
    required: bool = False


class RecordShape(NamedTuple):
    name: str
    fields: Tuple[ColumnDef, ...]


METADATA_SHAPE = RecordShape("metadata", (
    ColumnDef("cpe", TEXT, required=True),
    ColumnDef("lat", NUMBER),
    ColumnDef("lon", NUMBER),
    ColumnDef("totalarea", NUMBER),
    ColumnDef("name", TEXT),
    ColumnDef("fulladdress", TEXT),
))

METER_SHAPE = RecordShape("meter", (
    ColumnDef("cpe", TEXT, required=True),
    ColumnDef("timestamp", TEXT, required=True),
    ColumnDef("active_energy", NUMBER, required=True),
))

BREAKDOWN_SHAPE = RecordShape(
    "breakdown",
    (ColumnDef("timestamp", TEXT, required=True),)
    + tuple(ColumnDef(c, NUMBER) for c in BREAKDOWN_COLUMNS),
)

_float_prefix_re = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")
# Undecodable input bytes are read as U+FFFD
UNDECODABLE = "\ufffd"


def normalize_header(name: str) -> str:
    """Drop byte-order marks and surrounding whitespace from a header cell."""
    return (name or "").lstrip("\ufeff").strip()


def parse_float(raw: Optional[str]) -> Optional[float]:
    """
    Lenient float parse:
    - full parse first ("12.5", "1e3", " -4 ")
    - otherwise the longest leading numeric prefix ("12.5kWh" -> 12.5)
    - empty / non-numeric / NaN / infinite -> None
    """
    s = (raw or "").strip()
    if not s:
        return None
    try:
        value = float(s)
    except ValueError:
        m = _float_prefix_re.match(s)
        if not m:
            return None
        value = float(m.group(0))
    if math.isnan(value) or math.isinf(value):
        return None
    return value


class CsvRecordReader:
    """
    Single-pass reader turning CSV text into records of a given shape.

    The first row is the header; data cells are matched to header names by
    position. Iterating yields one dict per accepted row. Rejected rows and
    values that fail numeric coercion are logged and counted, never raised.
    Problems with the stream itself raise IngestionError.
    """

    def __init__(self, stream: TextIO, shape: RecordShape, source: str = "<stream>"):
        self.stream = stream
        self.shape = shape
        self.source = source
        self.headers: List[str] = []
        self.rows_seen = 0
        self.accepted = 0
        self.rejected = 0
        self.coerce_failures = 0
        self._used = False

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        if self._used:
            raise IngestionError(f"{self.source}: reader already consumed; open the source again")
        self._used = True
        return self._records()

    def _records(self) -> Iterator[Dict[str, Any]]:
        tag = f"[csv:{self.shape.name}]"
        try:
            rows = csv.reader(self.stream)
            header_row = next(rows, None)
            if header_row is None:
                log("WARN", f"{tag} {self.source} is empty")
                return
            self.headers = [normalize_header(h) for h in header_row]
            log("DEBUG", f"{tag} headers detected: {self.headers}")
            positions = self._field_positions()

            while True:
                try:
                    row = next(rows)
                except StopIteration:
                    break
                except csv.Error as e:
                    # the reader resets on the next line, so one bad row is skipped
                    self.rows_seen += 1
                    self.rejected += 1
                    log("WARN", f"{tag} line {rows.line_num}: skipping malformed row: {e}")
                    continue
                if not any(cell.strip() for cell in row):
                    continue
                self.rows_seen += 1
                record = self._normalize(row, positions)
                if record is None:
                    self.rejected += 1
                    continue
                self.accepted += 1
                yield record
        except (csv.Error, UnicodeDecodeError, OSError, requests.RequestException) as e:
            raise IngestionError(f"{self.source}: read failed at row {self.rows_seen + 1}: {e}") from e

        log("INFO", f"{tag} {self.source}: {self.rows_seen} rows read, {self.accepted} accepted, "
                    f"{self.rejected} rejected, {self.coerce_failures} unparseable values")

    def _field_positions(self) -> Dict[str, Optional[int]]:
        index_by_name: Dict[str, int] = {}
        for i, h in enumerate(self.headers):
            index_by_name.setdefault(h, i)

        positions: Dict[str, Optional[int]] = {}
        for field in self.shape.fields:
            pos = index_by_name.get(field.name)
            if pos is None:
                if field.required:
                    raise IngestionError(
                        f"{self.source}: required column '{field.name}' not in header {self.headers}"
                    )
                log("WARN", f"[csv:{self.shape.name}] column '{field.name}' not in header; values will be empty")
            positions[field.name] = pos
        return positions

    def _normalize(self, row: Sequence[str], positions: Dict[str, Optional[int]]) -> Optional[Dict[str, Any]]:
        line = self.rows_seen + 1  # header is line 1
        record: Dict[str, Any] = {}
        for field in self.shape.fields:
            pos = positions[field.name]
            raw = row[pos] if pos is not None and pos < len(row) else ""

            if field.kind == NUMBER:
                value = parse_float(raw)
                if value is None and raw.strip():
                    self.coerce_failures += 1
                    log("DEBUG", f"[csv:{self.shape.name}] line {line}: '{field.name}'={raw!r} is not a number")
            else:
                value = raw.strip()

            if field.required and (value is None or value == ""):
                log("WARN", f"[csv:{self.shape.name}] line {line}: skipping row with empty "
                            f"'{field.name}': {dict(zip(self.headers, row))}")
                return None
            if field.required and field.kind == TEXT and UNDECODABLE in value:
                log("WARN", f"[csv:{self.shape.name}] line {line}: skipping row with undecodable "
                            f"'{field.name}': {value!r}")
                return None
            record[field.name] = value
        return record


# --------------------- SOURCES --------------------

def is_url(location: str) -> bool:
    return location.lower().startswith(("http://", "https://"))


@contextmanager
def open_source(location: Optional[str]) -> Iterator[Optional[TextIO]]:
    """
    Yield a text stream for a local path or http(s) URL, or None when the
    source does not exist. The stream is closed when the block exits, even
    if the caller stops reading early.
    """
    if not location:
        yield None
        return

    if is_url(location):
        try:
            r = requests.get(location, stream=True, timeout=REQUEST_TIMEOUT)
        except requests.RequestException as e:
            raise IngestionError(f"{location}: request failed: {e}") from e
        try:
            if r.status_code == 404:
                yield None
                return
            try:
                r.raise_for_status()
            except requests.HTTPError as e:
                raise IngestionError(f"{location}: {e}") from e
            r.raw.decode_content = True
            yield io.TextIOWrapper(r.raw, encoding="utf-8-sig", errors="replace", newline="")
        finally:
            r.close()
        return

    if not os.path.exists(location):
        yield None
        return
    try:
        f = open(location, "r", encoding="utf-8-sig", errors="replace", newline="")
    except OSError as e:
        raise IngestionError(f"{location}: open failed: {e}") from e
    with f:
        yield f


# --------------------- PIPELINE -------------------

def default_sources() -> Dict[str, Optional[str]]:
    return {
        "metadata": METADATA_CSV,
        "meter": SMART_METER_CSV,
        "breakdown": BREAKDOWN_CSV,
    }


class _SourceTable(NamedTuple):
    table: str
    shape: RecordShape
    insert_sql: str
    columns: Tuple[str, ...]
    eager: bool


def _insert_sql(verb: str, table: str, columns: Sequence[str]) -> str:
    placeholders = ", ".join("?" for _ in columns)
    return f"{verb} INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"


_METADATA_COLS = ("cpe", "lat", "lon", "totalarea", "name", "fulladdress")
_METER_COLS = ("cpe", "timestamp", "active_energy")
_BREAKDOWN_COLS = ("timestamp",) + tuple(BREAKDOWN_COLUMNS)

SOURCE_TABLES: Dict[str, _SourceTable] = {
    "metadata": _SourceTable(
        "metadata", METADATA_SHAPE,
        _insert_sql("INSERT OR REPLACE", "metadata", _METADATA_COLS), _METADATA_COLS, eager=True,
    ),
    "meter": _SourceTable(
        "smart_meter_data", METER_SHAPE,
        _insert_sql("INSERT", "smart_meter_data", _METER_COLS), _METER_COLS, eager=False,
    ),
    "breakdown": _SourceTable(
        "energy_breakdown", BREAKDOWN_SHAPE,
        _insert_sql("INSERT", "energy_breakdown", _BREAKDOWN_COLS), _BREAKDOWN_COLS, eager=False,
    ),
}


def _load_into(conn: sqlite3.Connection, name: str, location: Optional[str], cap: int,
               batch_size: int) -> Dict[str, Any]:
    """
    Clear one table and reload it from its source, inside the caller's
    transaction. Raises on store or stream failure; the caller rolls back.
    """
    target = SOURCE_TABLES[name]
    tag = f"[ingest:{name}]"
    result: Dict[str, Any] = {
        "status": "loaded", "table": target.table, "location": location,
        "rows": 0, "rejected": 0, "error": None,
    }

    conn.execute(f"DELETE FROM {target.table}")

    with open_source(location) as stream:
        if stream is None:
            log("INFO", f"{tag} source {location!r} not found; skipping")
            result["status"] = "skipped"
            return result

        reader = CsvRecordReader(stream, target.shape, source=location)
        records = iter(reader)

        if target.eager:
            rows = [tuple(rec[c] for c in target.columns) for rec in records]
            if rows:
                log("DEBUG", f"{tag} sample row: {rows[0]}")
            conn.executemany(target.insert_sql, rows)
            result["rows"] = len(rows)
        else:
            batch: List[Tuple] = []
            count = 0
            for rec in records:
                batch.append(tuple(rec[c] for c in target.columns))
                count += 1
                if len(batch) >= batch_size:
                    conn.executemany(target.insert_sql, batch)
                    batch = []
                if 0 < cap <= count:
                    log("INFO", f"{tag} row cap {cap} reached; ignoring the rest of {location}")
                    break
            if batch:
                conn.executemany(target.insert_sql, batch)
            records.close()
            result["rows"] = count

        result["rejected"] = reader.rejected

    log("INFO", f"{tag} {result['rows']} rows loaded into {target.table} ({result['rejected']} rejected)")
    return result


def load_all(
    conn: sqlite3.Connection,
    sources: Optional[Dict[str, Optional[str]]] = None,
    meter_cap: int = METER_ROW_CAP,
    breakdown_cap: int = BREAKDOWN_ROW_CAP,
    batch_size: int = INSERT_BATCH_SIZE,
    only: Optional[Sequence[str]] = None,
) -> Dict[str, Dict[str, Any]]:
    """
    Full refresh of metadata, meter readings and breakdown.

    `sources` maps 'metadata' / 'meter' / 'breakdown' to a path or URL
    (None or a missing file means skip). `only` restricts the run to some
    of the sources; the others are left untouched.
    """
    if sources is None:
        sources = default_sources()
    names = [n for n in SOURCE_NAMES if only is None or n in only]
    caps = {"metadata": 0, "meter": meter_cap, "breakdown": breakdown_cap}
    report: Dict[str, Dict[str, Any]] = {}

    log("INFO", f"[ingest] full refresh of {', '.join(names)} starting")
    conn.execute("BEGIN")
    try:
        for name in names:
            location = sources.get(name)
            conn.execute(f"SAVEPOINT load_{name}")
            try:
                report[name] = _load_into(conn, name, location, caps[name], batch_size)
            except (sqlite3.Error, IngestionError) as e:
                conn.execute(f"ROLLBACK TO SAVEPOINT load_{name}")
                log("ERROR", f"[ingest:{name}] load from {location!r} failed; previous rows kept: {e}")
                report[name] = {
                    "status": "failed", "table": SOURCE_TABLES[name].table, "location": location,
                    "rows": 0, "rejected": 0, "error": str(e),
                }
            conn.execute(f"RELEASE SAVEPOINT load_{name}")
        conn.execute("COMMIT")
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise

    log("INFO", "[ingest] full refresh done: " + ", ".join(
        f"{n}={r['status']}({r['rows']})" for n, r in report.items()
    ))
    return report


def load_metadata(conn: sqlite3.Connection, location: Optional[str] = None) -> Dict[str, Any]:
    location = location if location is not None else METADATA_CSV
    return load_all(conn, {"metadata": location}, only=["metadata"])["metadata"]


def load_meter_readings(conn: sqlite3.Connection, location: Optional[str] = None,
                        cap: int = METER_ROW_CAP) -> Dict[str, Any]:
    location = location if location is not None else SMART_METER_CSV
    return load_all(conn, {"meter": location}, meter_cap=cap, only=["meter"])["meter"]


def load_breakdown(conn: sqlite3.Connection, location: Optional[str] = None,
                   cap: int = BREAKDOWN_ROW_CAP) -> Dict[str, Any]:
    location = location if location is not None else BREAKDOWN_CSV
    return load_all(conn, {"breakdown": location}, breakdown_cap=cap, only=["breakdown"])["breakdown"]


def main() -> int:
    log("INFO", f"Energy CSV loader started. DB: {DB_PATH}; sources: {default_sources()}")
    try:
        conn = connect(DB_PATH)
        ensure_schema(conn)
    except sqlite3.Error as e:
        log("ERROR", f"[schema] cannot prepare database {DB_PATH}: {e}")
        return 1

    try:
        report = load_all(conn)
    except sqlite3.Error as e:
        log("ERROR", f"[ingest] refresh aborted: {e}")
        return 1
    finally:
        conn.close()

    failed = [n for n, r in report.items() if r["status"] == "failed"]
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
