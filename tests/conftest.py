"""Pytest configuration and shared fixtures for the building energy tests."""

import sqlite3
from pathlib import Path
from typing import Callable, Dict, Iterator, List

import pytest

from energy_ingest import BREAKDOWN_COLUMNS, connect, ensure_schema

BOM = "\ufeff"

METADATA_LINES = [
    f"{BOM}cpe,lat,lon,totalarea,name,fulladdress",
    "B1,40.0,-73.9,1000,A,1 Main St",
    'B2,41.5,-74.0,2500,B,"2 Side Ave, Apt 3"',
    "B3,not-a-lat,-74.1,800,C,3 Third St",
    ",41,-73,500,Ghost,Nowhere",
]

METER_LINES = [
    "cpe,timestamp,active_energy",
    "B1,2021-03-01T00:00:00,5.0",
    "B1,2021-03-02T00:00:00,3.0",
    "B1,2021-04-10T13:00:00,2.5",
    "B1,2021-04-10T13:30:00,1.5",
    "B1,2021-04-10T14:00:00,4.0",
    "B1,2022-01-01T00:00:00,100.0",
    "B2,2021-03-05T10:00:00,7.0",
    "B2,2021-03-05T11:00:00,abc",
    "ORPHAN,2021-03-01T00:00:00,9.0",
]


def breakdown_lines(hours: int = 30) -> List[str]:
    """Hourly breakdown rows from 2021-03-01T00:00:00 on; renewable total deliberately != sum of parts."""
    lines = [",".join(["timestamp"] + BREAKDOWN_COLUMNS)]
    for h in range(hours):
        day, hour = divmod(h, 24)
        ts = f"2021-03-{day + 1:02d}T{hour:02d}:00:00"
        values = [str(float(i + 1)) for i in range(len(BREAKDOWN_COLUMNS))]
        values[BREAKDOWN_COLUMNS.index("renewable")] = "99.5"
        if h == 0:
            values[BREAKDOWN_COLUMNS.index("unknown")] = "n/a"
        lines.append(",".join([ts] + values))
    return lines


@pytest.fixture
def write_csv(tmp_path: Path) -> Callable[[str, List[str]], str]:
    """Write lines to a CSV under tmp_path and return its path."""

    def _write(name: str, lines: List[str]) -> str:
        path = tmp_path / name
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return str(path)

    return _write


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "energy_test.db")


@pytest.fixture
def db(db_path: str) -> Iterator[sqlite3.Connection]:
    conn = connect(db_path)
    ensure_schema(conn)
    yield conn
    conn.close()


@pytest.fixture
def sample_sources(write_csv: Callable[[str, List[str]], str]) -> Dict[str, str]:
    return {
        "metadata": write_csv("metadata.csv", METADATA_LINES),
        "meter": write_csv("smart_meter.csv", METER_LINES),
        "breakdown": write_csv("energy_source_breakdown.csv", breakdown_lines()),
    }



class BrokenStream:
    """Yields the given lines, then fails like a dropped connection."""

    def __init__(self, lines: List[str]) -> None:
        self._lines: Iterator[str] = iter(lines)

    def __iter__(self) -> "BrokenStream":
        return self

    def __next__(self) -> str:
        line = next(self._lines, None)
        if line is None:
            raise OSError("connection reset by peer")
        return line
