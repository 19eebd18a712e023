from __future__ import annotations

import json
import queue
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import duckdb
from loguru import logger

from geo.bounds import ViewportBounds
from telemetry.config import telemetry_enabled, telemetry_path
from telemetry.sql import (
    CREATE_EVENTS_TABLE_SQL,
    INSERT_EVENTS_SQL,
    SLOWEST_SQL_TEMPLATE,
    SUMMARY_SQL_TEMPLATE,
)

__all__ = ["TelemetryStore", "telemetry_enabled", "telemetry_path"]

_FLUSH_BATCH = 250
_FLUSH_INTERVAL_S = 0.5
# Events waiting for the writer thread; beyond this they are dropped.
_MAX_QUEUED = 10_000


def _safe_float(v) -> float | None:
    try:
        if v is None:
            return None
        return float(v)
    except (TypeError, ValueError):
        return None


@dataclass
class TelemetryStore:
    """
    Append-only DuckDB log of fetch events.

    Writes go through a queue drained by one writer thread so request handling never
    blocks on disk. Events carry the location kind and bounds only, never the query
    text the user typed. When the writer falls behind, new events are dropped and
    counted in `dropped`.
    """

    path: Path
    conn: duckdb.DuckDBPyConnection
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    _q: "queue.Queue[dict[str, Any]]" = field(
        default_factory=lambda: queue.Queue(maxsize=_MAX_QUEUED), repr=False
    )
    _stop: threading.Event = field(default_factory=threading.Event, repr=False)
    _worker: threading.Thread | None = field(default=None, repr=False)
    dropped: int = 0

    def ensure_schema(self) -> None:
        with self._lock:
            self.conn.execute(CREATE_EVENTS_TABLE_SQL)

    def start(self) -> None:
        if self._worker is not None:
            return
        self._stop.clear()
        self._worker = threading.Thread(
            target=self._run, name="telemetry-writer", daemon=True
        )
        self._worker.start()

    def stop(self, *, timeout_s: float = 2.0) -> None:
        self._stop.set()
        w = self._worker
        if w is not None and w.is_alive():
            w.join(timeout=timeout_s)
        self._worker = None

    def record(
        self,
        *,
        event: str,
        source: str,
        location_kind: str | None,
        cache_hit: bool,
        bounds: ViewportBounds | None,
        stats: dict[str, Any],
    ) -> None:
        # Non-blocking: enqueue and return.
        self.start()
        b = bounds.normalized() if bounds is not None else None
        try:
            self._q.put_nowait(
                {
                    "ts_ms": int(time.time() * 1000),
                    "event": str(event),
                    "source": str(source),
                    "location_kind": location_kind,
                    "cache_hit": bool(cache_hit),
                    "bbox_west": b.west if b else None,
                    "bbox_south": b.south if b else None,
                    "bbox_east": b.east if b else None,
                    "bbox_north": b.north if b else None,
                    "stats_json": json.dumps(stats, ensure_ascii=False),
                }
            )
        except queue.Full:
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 1000 == 0:
                logger.warning(f"Telemetry writer is behind, dropped {self.dropped} events so far")

    def flush(self, *, timeout_s: float = 2.0) -> None:
        """
        Wait until queued events are written (used by tests).
        """
        if self._worker is None:
            return
        deadline = time.time() + timeout_s
        while time.time() < deadline:
            if self._q.unfinished_tasks == 0:
                break
            time.sleep(0.01)
        time.sleep(_FLUSH_INTERVAL_S + 0.05)

    def query(self, sql: str, params: list[Any] | None = None) -> list[tuple]:
        # DuckDB holds a file lock; read through the owning process.
        with self._lock:
            if params:
                return self.conn.execute(sql, params).fetchall()
            return self.conn.execute(sql).fetchall()

    def summary(
        self,
        *,
        source: str | None = None,
        event: str | None = None,
        since_ms: int | None = None,
    ) -> list[dict[str, Any]]:
        where = []
        params: list[Any] = []
        if source:
            where.append("source = ?")
            params.append(source)
        if event:
            where.append("event = ?")
            params.append(event)
        if since_ms is not None:
            where.append("ts_ms >= ?")
            params.append(int(since_ms))

        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        rows = self.query(SUMMARY_SQL_TEMPLATE.format(where_sql=where_sql), params)

        out: list[dict[str, Any]] = []
        for source_v, event_v, n, avg_ms, p50, p95, avg_entities, hit_rate, n_errors in rows:
            out.append(
                {
                    "source": source_v,
                    "event": event_v,
                    "n": int(n),
                    "avgTotalMs": _safe_float(avg_ms),
                    "p50TotalMs": _safe_float(p50),
                    "p95TotalMs": _safe_float(p95),
                    "avgEntities": _safe_float(avg_entities),
                    "cacheHitRate": _safe_float(hit_rate),
                    "errors": int(n_errors or 0),
                }
            )
        return out

    def slowest(
        self,
        *,
        source: str | None = None,
        limit: int = 25,
    ) -> list[dict[str, Any]]:
        where = ["json_extract(stats_json, '$.timingsMs.total') IS NOT NULL"]
        params: list[Any] = []
        if source:
            where.append("source = ?")
            params.append(source)
        params.append(int(max(1, min(200, limit))))

        rows = self.query(
            SLOWEST_SQL_TEMPLATE.format(where_sql=" AND ".join(where)),
            params,
        )
        return [
            {
                "tsMs": int(ts_ms),
                "source": source_v,
                "event": event_v,
                "locationKind": kind,
                "totalMs": _safe_float(total_ms),
                "entities": int(entities) if entities is not None else None,
                "error": error,
            }
            for ts_ms, source_v, event_v, kind, total_ms, entities, error in rows
        ]

    def reset(self) -> None:
        self.stop(timeout_s=2.0)
        with self._lock:
            self.conn.close()
            self.path.unlink(missing_ok=True)

    def _run(self) -> None:
        self.ensure_schema()
        batch: list[dict[str, Any]] = []
        last_flush = time.time()

        def flush_batch() -> None:
            nonlocal batch
            if not batch:
                return
            with self._lock:
                self.conn.executemany(
                    INSERT_EVENTS_SQL,
                    [
                        (
                            e["ts_ms"],
                            e["event"],
                            e["source"],
                            e["location_kind"],
                            e["cache_hit"],
                            e["bbox_west"],
                            e["bbox_south"],
                            e["bbox_east"],
                            e["bbox_north"],
                            e["stats_json"],
                        )
                        for e in batch
                    ],
                )
                self.conn.execute("CHECKPOINT;")
            batch = []

        while not self._stop.is_set():
            try:
                e = self._q.get(timeout=0.1)
            except queue.Empty:
                e = None

            if e is not None:
                batch.append(e)
                self._q.task_done()

            now = time.time()
            if len(batch) >= _FLUSH_BATCH or (batch and (now - last_flush) >= _FLUSH_INTERVAL_S):
                flush_batch()
                last_flush = now

        while True:
            try:
                e = self._q.get_nowait()
            except queue.Empty:
                break
            batch.append(e)
            self._q.task_done()
        flush_batch()
