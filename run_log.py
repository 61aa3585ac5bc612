"""
================================================================================
 PROOFKIT RUN LOG
 ----------------
 Append-only audit store for harness verdicts, gate decisions and
 production run summaries.

 File layout (one JSON document per record, never rewritten):
   <log_dir>/20261016T221530123456Z_idempotency_test.json
   <log_dir>/20261016T221612654321Z_promote_gate.json
   <log_dir>/20261016T230001000000Z_production_run.json

 Each document: {"kind": ..., "timestamp": <ISO-8601 UTC>, "payload": {...}}
================================================================================
"""

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import pandas as pd

from run_context import parse_timestamp, utc_now

logger = logging.getLogger("RunLog")

IDEMPOTENCY_TEST = "idempotency_test"
PROMOTE_GATE = "promote_gate"
PRODUCTION_RUN = "production_run"


class RunLogUnavailableError(Exception):
    """The run log cannot be read (missing or unreadable directory)."""


class RunLogWriteError(Exception):
    """A record could not be appended."""


@dataclass
class RunLogRecord:
    kind: str
    timestamp: str
    payload: Dict[str, Any]
    location: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "timestamp": self.timestamp, "payload": self.payload}


class RunLog:
    """Append-only, timestamp-ordered record store."""

    def append(self, kind: str, payload: Dict[str, Any]) -> RunLogRecord:
        raise NotImplementedError

    def recent(self, kind: Optional[str] = None, limit: int = 10) -> List[RunLogRecord]:
        """Most recent records (optionally of one kind), newest first."""
        raise NotImplementedError

    def latest(self, kind: str) -> Optional[RunLogRecord]:
        records = self.recent(kind, limit=1)
        return records[0] if records else None


class InMemoryRunLog(RunLog):

    def __init__(self):
        self.records: List[RunLogRecord] = []

    def append(self, kind: str, payload: Dict[str, Any]) -> RunLogRecord:
        record = RunLogRecord(kind, utc_now().isoformat(), json.loads(json.dumps(payload, default=str)))
        self.records.append(record)
        return record

    def recent(self, kind: Optional[str] = None, limit: int = 10) -> List[RunLogRecord]:
        # appends are chronological; reversed insertion order breaks timestamp ties
        matching = [r for r in reversed(self.records) if kind is None or r.kind == kind]
        matching.sort(key=lambda r: parse_timestamp(r.timestamp), reverse=True)
        return matching[:limit]


class FileRunLog(RunLog):
    """Run log kept as one JSON file per record in a directory."""

    def __init__(self, directory: str, create: bool = False):
        self.directory = directory
        if create:
            os.makedirs(directory, exist_ok=True)

    def append(self, kind: str, payload: Dict[str, Any]) -> RunLogRecord:
        now = utc_now()
        record = RunLogRecord(kind, now.isoformat(), payload)
        stamp = now.strftime("%Y%m%dT%H%M%S%fZ")
        for attempt in range(100):
            suffix = f"-{attempt}" if attempt else ""
            path = os.path.join(self.directory, f"{stamp}{suffix}_{kind}.json")
            try:
                with open(path, "x") as f:
                    json.dump(record.to_dict(), f, indent=2, default=str)
                    f.write("\n")
            except FileExistsError:
                continue
            except OSError as e:
                raise RunLogWriteError(f"Could not write {kind} record to {self.directory}: {e}")
            record.location = path
            logger.info(f"Appended {kind} record: {path}")
            return record
        raise RunLogWriteError(f"Could not allocate a unique {kind} record name in {self.directory}")

    def index(self) -> pd.DataFrame:
        """One row per record file: kind, timestamp, path."""
        if not os.path.isdir(self.directory):
            raise RunLogUnavailableError(f"Log directory not found: {self.directory}")
        try:
            names = os.listdir(self.directory)
        except OSError as e:
            raise RunLogUnavailableError(f"Log directory unreadable: {self.directory} ({e})")

        rows = []
        for name in names:
            if not name.endswith(".json") or "_" not in name:
                continue
            stamp, kind = name[:-len(".json")].split("_", 1)
            stamp, _, seq = stamp.partition("-")
            rows.append({"kind": kind, "stamp": stamp, "seq": int(seq) if seq.isdigit() else 0,
                         "path": os.path.join(self.directory, name)})
        df = pd.DataFrame(rows, columns=["kind", "stamp", "seq", "path"])
        if df.empty:
            return df.assign(timestamp=pd.Series(dtype="datetime64[ns, UTC]"))
        df["timestamp"] = pd.to_datetime(df["stamp"], format="%Y%m%dT%H%M%S%fZ", utc=True, errors="coerce")
        return df.dropna(subset=["timestamp"])

    def recent(self, kind: Optional[str] = None, limit: int = 10) -> List[RunLogRecord]:
        df = self.index()
        if kind is not None:
            df = df[df["kind"] == kind]
        df = df.sort_values(["timestamp", "seq"], ascending=False)

        records = []
        for path in df["path"]:
            if len(records) >= limit:
                break
            try:
                with open(path) as f:
                    doc = json.load(f)
                records.append(RunLogRecord(doc["kind"], doc["timestamp"], doc.get("payload") or {}, path))
            except (OSError, ValueError, KeyError) as e:
                logger.warning(f"Skipping unreadable run log record {path}: {e}")
        return records
