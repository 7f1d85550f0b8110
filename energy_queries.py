# -*- coding: utf-8 -*-
"""
Read-side aggregations over the tables written by energy_ingest.

Every function re-queries the store; nothing is cached. Timestamps are
bucketed with SQLite strftime(), so any ISO-8601 style text works
('2021-03-01T00:00:00', '2021-03-01 00:00', ...). Rows whose timestamp
SQLite cannot parse never fall into a bucket.
"""

import sqlite3
from typing import Any, Dict, List, Optional, Tuple

# period -> (label column, bucket format, window format)
SERIES_PERIODS: Dict[str, Tuple[str, str, str]] = {
    "monthly": ("month", "%Y-%m", "%Y"),
    "daily": ("day", "%Y-%m-%d", "%Y-%m"),
    "hourly": ("hour", "%H:00", "%Y-%m-%d"),
}


def _dicts(cur: sqlite3.Cursor) -> List[Dict[str, Any]]:
    cols = [d[0] for d in cur.description]
    return [dict(zip(cols, r)) for r in cur.fetchall()]


def building_totals(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    """All buildings with their summed readings, highest first. No readings -> 0."""
    cur = conn.execute(
        """
        SELECT m.cpe,
               m.lat,
               m.lon,
               m.totalarea,
               m.name,
               m.fulladdress,
               COALESCE(SUM(smd.active_energy), 0) AS annual_energy
        FROM metadata m
        LEFT JOIN smart_meter_data smd ON smd.cpe = m.cpe
        GROUP BY m.cpe, m.lat, m.lon, m.totalarea, m.name, m.fulladdress
        ORDER BY annual_energy DESC, m.cpe
        """
    )
    return _dicts(cur)


def energy_series(conn: sqlite3.Connection, cpe: str, period: str, window: str) -> List[Dict[str, Any]]:
    """
    Time-bucketed sums for one building.

    monthly: window 'YYYY'       -> [{month: 'YYYY-MM', total_energy}]
    daily:   window 'YYYY-MM'    -> [{day: 'YYYY-MM-DD', total_energy}]
    hourly:  window 'YYYY-MM-DD' -> [{hour: 'HH:00', total_energy}]
    """
    if period not in SERIES_PERIODS:
        raise ValueError(f"Invalid period: {period!r}")
    label, bucket_fmt, window_fmt = SERIES_PERIODS[period]
    rows = conn.execute(
        f"""
        SELECT strftime('{bucket_fmt}', timestamp) AS bucket,
               SUM(active_energy)                  AS total_energy
        FROM smart_meter_data
        WHERE cpe = ?
          AND strftime('{window_fmt}', timestamp) = ?
        GROUP BY bucket
        ORDER BY bucket
        """,
        (cpe, window),
    ).fetchall()
    return [{label: bucket, "total_energy": float(total or 0.0)} for bucket, total in rows]


def _like_prefix(prefix: str) -> str:
    escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return escaped + "%"


def energy_breakdown(
    conn: sqlite3.Connection, timestamp_prefix: Optional[str] = None, limit: int = 24
) -> List[Dict[str, Any]]:
    """Breakdown rows whose timestamp starts with the prefix (all rows if None), earliest first."""
    sql = "SELECT * FROM energy_breakdown"
    args: List[Any] = []
    if timestamp_prefix:
        sql += " WHERE timestamp LIKE ? ESCAPE '\\'"
        args.append(_like_prefix(timestamp_prefix))
    sql += " ORDER BY timestamp, id LIMIT ?"
    args.append(limit)
    return _dicts(conn.execute(sql, args))


def buildings_energy_for_year(conn: sqlite3.Connection, year: str) -> List[Dict[str, Any]]:
    # year filter sits in the join so buildings without readings that year stay (at 0)
    cur = conn.execute(
        """
        SELECT m.cpe,
               m.name,
               m.lat,
               m.lon,
               m.totalarea,
               COALESCE(SUM(smd.active_energy), 0) AS annual_energy
        FROM metadata m
        LEFT JOIN smart_meter_data smd
               ON smd.cpe = m.cpe
              AND strftime('%Y', smd.timestamp) = ?
        GROUP BY m.cpe, m.name, m.lat, m.lon, m.totalarea
        ORDER BY annual_energy DESC, m.cpe
        """,
        (year,),
    )
    return _dicts(cur)


def metadata_sample(conn: sqlite3.Connection, limit: int = 5) -> Dict[str, Any]:
    count = conn.execute("SELECT COUNT(*) FROM metadata").fetchone()[0] or 0
    cur = conn.execute("SELECT * FROM metadata ORDER BY cpe LIMIT ?", (limit,))
    sample = _dicts(cur)
    return {
        "count": int(count),
        "sample": sample,
        "columns": [d[0] for d in cur.description],
    }
