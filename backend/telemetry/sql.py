from __future__ import annotations

CREATE_EVENTS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS events (
  ts_ms BIGINT,
  event TEXT,
  source TEXT,
  location_kind TEXT,
  cache_hit BOOLEAN,
  bbox_west DOUBLE,
  bbox_south DOUBLE,
  bbox_east DOUBLE,
  bbox_north DOUBLE,
  stats_json TEXT
);
"""

SUMMARY_SQL_TEMPLATE = """
SELECT
  source,
  event,
  COUNT(*) AS n,
  AVG(try_cast(json_extract(stats_json, '$.timingsMs.total') AS DOUBLE)) AS avg_total_ms,
  quantile_cont(try_cast(json_extract(stats_json, '$.timingsMs.total') AS DOUBLE), 0.50) AS p50_total_ms,
  quantile_cont(try_cast(json_extract(stats_json, '$.timingsMs.total') AS DOUBLE), 0.95) AS p95_total_ms,
  AVG(try_cast(json_extract(stats_json, '$.entities') AS DOUBLE)) AS avg_entities,
  AVG(CASE WHEN cache_hit THEN 1 ELSE 0 END) AS cache_hit_rate,
  SUM(CASE WHEN json_extract(stats_json, '$.error') IS NOT NULL THEN 1 ELSE 0 END) AS n_errors
FROM events
{where_sql}
GROUP BY source, event
ORDER BY source, event
"""

SLOWEST_SQL_TEMPLATE = """
SELECT
  ts_ms,
  source,
  event,
  location_kind,
  try_cast(json_extract(stats_json, '$.timingsMs.total') AS DOUBLE) AS total_ms,
  try_cast(json_extract(stats_json, '$.entities') AS BIGINT) AS entities,
  json_extract_string(stats_json, '$.error') AS error
FROM events
WHERE {where_sql}
ORDER BY total_ms DESC
LIMIT ?
"""

INSERT_EVENTS_SQL = """
INSERT INTO events
  (ts_ms, event, source, location_kind, cache_hit, bbox_west, bbox_south, bbox_east, bbox_north, stats_json)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""
