from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import duckdb

from metrics import DEFAULT_MIN_SAMPLES, summarize_latencies
from records import LatencySample

logger = logging.getLogger(__name__)


class BenchmarkStorage:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        logger.debug("Opening database: %s", db_path)
        self.connection = duckdb.connect(str(db_path))
        self._init_schema()

    def _init_schema(self) -> None:
        logger.debug("Initializing schema")
        self.connection.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id VARCHAR PRIMARY KEY,
                started_at DOUBLE NOT NULL,
                finished_at DOUBLE,
                duration_s DOUBLE,
                stopped_early BOOLEAN NOT NULL DEFAULT FALSE,
                config_json VARCHAR NOT NULL,
                counters_json VARCHAR
            );

            CREATE TABLE IF NOT EXISTS samples (
                run_id VARCHAR NOT NULL,
                seq BIGINT NOT NULL,
                sensor_id VARCHAR NOT NULL,
                correlation_key VARCHAR NOT NULL,
                generated_at DOUBLE NOT NULL,
                received_at DOUBLE NOT NULL,
                latency_ms BIGINT NOT NULL,
                clock_skew BOOLEAN NOT NULL,
                spans_json VARCHAR NOT NULL,
                dimensions_json VARCHAR NOT NULL,
                PRIMARY KEY (run_id, seq)
            );

            CREATE TABLE IF NOT EXISTS window_metrics_1s (
                run_id VARCHAR NOT NULL,
                window_start BIGINT NOT NULL,
                sample_count BIGINT NOT NULL,
                samples_per_s DOUBLE NOT NULL,
                avg_latency_ms DOUBLE NOT NULL,
                p95_latency_ms DOUBLE NOT NULL,
                PRIMARY KEY (run_id, window_start)
            );
            """
        )

    def create_run(self, run_id: str, started_at: float, config_json: str) -> None:
        logger.debug("Creating run: %s", run_id)
        self.connection.execute(
            """
            INSERT INTO runs (run_id, started_at, config_json)
            VALUES (?, ?, ?)
            """,
            [run_id, started_at, config_json],
        )

    def finish_run(
        self,
        run_id: str,
        finished_at: float,
        counters: dict[str, int] | None = None,
        stopped_early: bool = False,
    ) -> None:
        logger.debug("Finishing run: %s", run_id)
        self.connection.execute(
            """
            UPDATE runs
            SET finished_at = ?,
                duration_s = ? - started_at,
                stopped_early = ?,
                counters_json = ?
            WHERE run_id = ?
            """,
            [
                finished_at,
                finished_at,
                stopped_early,
                json.dumps(counters or {}, sort_keys=True),
                run_id,
            ],
        )

    def get_run(self, run_id: str) -> dict[str, Any]:
        row = self.connection.execute(
            """
            SELECT run_id, started_at, finished_at, duration_s, stopped_early,
                   config_json, counters_json
            FROM runs
            WHERE run_id = ?
            """,
            [run_id],
        ).fetchone()
        if row is None:
            raise KeyError(run_id)
        return self._row_to_run(row)

    def delete_run(self, run_id: str) -> bool:
        existing = self.connection.execute(
            """
            SELECT 1
            FROM runs
            WHERE run_id = ?
            LIMIT 1
            """,
            [run_id],
        ).fetchone()
        if existing is None:
            return False

        logger.debug("Deleting run: %s", run_id)
        self.connection.execute("BEGIN TRANSACTION")
        try:
            self.connection.execute(
                "DELETE FROM window_metrics_1s WHERE run_id = ?", [run_id]
            )
            self.connection.execute("DELETE FROM samples WHERE run_id = ?", [run_id])
            self.connection.execute("DELETE FROM runs WHERE run_id = ?", [run_id])
            self.connection.execute("COMMIT")
        except Exception:  # noqa: BLE001
            logger.warning("Error during deletion of run %s, rolling back transaction", run_id, exc_info=True)
            self.connection.execute("ROLLBACK")
            raise
        return True

    def list_runs(self) -> list[dict[str, Any]]:
        rows = self.connection.execute(
            """
            SELECT run_id, started_at, finished_at, duration_s, stopped_early,
                   config_json, counters_json
            FROM runs
            ORDER BY started_at DESC
            """
        ).fetchall()
        return [self._row_to_run(row) for row in rows]

    def list_runs_with_stats(self) -> list[dict[str, Any]]:
        rows = self.connection.execute(
            """
            WITH sample_stats AS (
                SELECT
                    run_id,
                    COUNT(*) AS sample_count,
                    COUNT(DISTINCT sensor_id) AS sensor_count,
                    AVG(latency_ms) AS avg_latency_ms,
                    SUM(CASE WHEN clock_skew THEN 1 ELSE 0 END) AS clock_skew_count
                FROM samples
                GROUP BY run_id
            )
            SELECT
                runs.run_id,
                runs.started_at,
                runs.finished_at,
                runs.duration_s,
                runs.stopped_early,
                runs.config_json,
                runs.counters_json,
                COALESCE(sample_stats.sample_count, 0) AS sample_count,
                COALESCE(sample_stats.sensor_count, 0) AS sensor_count,
                sample_stats.avg_latency_ms,
                COALESCE(sample_stats.clock_skew_count, 0) AS clock_skew_count
            FROM runs
            LEFT JOIN sample_stats USING (run_id)
            ORDER BY runs.started_at DESC
            """
        ).fetchall()
        results: list[dict[str, Any]] = []
        for row in rows:
            run = self._row_to_run(row[:7])
            run.update(
                {
                    "sample_count": int(row[7] or 0),
                    "sensor_count": int(row[8] or 0),
                    "avg_latency_ms": (float(row[9]) if row[9] is not None else None),
                    "clock_skew_count": int(row[10] or 0),
                }
            )
            results.append(run)
        return results

    def list_run_sensors(self, run_id: str) -> list[str]:
        rows = self.connection.execute(
            """
            SELECT DISTINCT sensor_id
            FROM samples
            WHERE run_id = ?
            ORDER BY sensor_id ASC
            """,
            [run_id],
        ).fetchall()
        return [row[0] for row in rows]

    def insert_samples(self, run_id: str, samples: list[LatencySample]) -> None:
        if not samples:
            return
        logger.debug("Inserting %d samples for run %s", len(samples), run_id)
        self.connection.executemany(
            """
            INSERT INTO samples (
                run_id,
                seq,
                sensor_id,
                correlation_key,
                generated_at,
                received_at,
                latency_ms,
                clock_skew,
                spans_json,
                dimensions_json
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    run_id,
                    seq,
                    sample.sensor_id,
                    sample.correlation_key,
                    sample.generated_at,
                    sample.received_at,
                    sample.latency_ms,
                    sample.clock_skew,
                    json.dumps(sample.spans, sort_keys=True),
                    json.dumps(sample.dimensions, sort_keys=True, default=str),
                )
                for seq, sample in enumerate(samples)
            ],
        )

    def load_latencies(self, run_id: str, sensor_id: str | None = None) -> list[float]:
        query = "SELECT latency_ms FROM samples WHERE run_id = ?"
        params: list[Any] = [run_id]
        if sensor_id is not None:
            query += " AND sensor_id = ?"
            params.append(sensor_id)
        query += " ORDER BY seq"
        rows = self.connection.execute(query, params).fetchall()
        return [float(row[0]) for row in rows]

    def refresh_window_metrics(self, run_id: str) -> None:
        logger.debug("Refreshing window metrics: run=%s", run_id)
        self.connection.execute(
            """
            DELETE FROM window_metrics_1s
            WHERE run_id = ?
            """,
            [run_id],
        )
        self.connection.execute(
            """
            INSERT INTO window_metrics_1s (
                run_id,
                window_start,
                sample_count,
                samples_per_s,
                avg_latency_ms,
                p95_latency_ms
            )
            SELECT
                run_id,
                CAST(FLOOR(received_at) AS BIGINT) AS window_start,
                COUNT(*) AS sample_count,
                COUNT(*)::DOUBLE AS samples_per_s,
                AVG(latency_ms)::DOUBLE AS avg_latency_ms,
                quantile_cont(latency_ms, 0.95)::DOUBLE AS p95_latency_ms
            FROM samples
            WHERE run_id = ?
            GROUP BY run_id, window_start
            ORDER BY window_start
            """,
            [run_id],
        )

    def get_run_summary(
        self, run_id: str, min_samples: int = DEFAULT_MIN_SAMPLES
    ) -> dict[str, Any]:
        run = self.get_run(run_id)

        latency = summarize_latencies(self.load_latencies(run_id), min_samples).to_dict()
        per_sensor = {
            sensor_id: self._quantiles_from_samples(run_id, sensor_id)
            for sensor_id in self.list_run_sensors(run_id)
        }
        throughput = {
            "samples_per_s": self._quantiles_from_windows(run_id, "samples_per_s"),
            "window_avg_latency_ms": self._quantiles_from_windows(run_id, "avg_latency_ms"),
        }
        return {
            "run_id": run_id,
            "stopped_early": run["stopped_early"],
            "counters": run["counters"],
            "latency": latency,
            "per_sensor": per_sensor,
            "throughput": throughput,
        }

    def close(self) -> None:
        self.connection.close()

    def _quantiles_from_samples(
        self, run_id: str, sensor_id: str
    ) -> dict[str, float | int | None]:
        row = self.connection.execute(
            """
            SELECT
                COUNT(latency_ms) AS count_value,
                quantile_cont(latency_ms, 0.5) AS p50,
                quantile_cont(latency_ms, 0.9) AS p90,
                quantile_cont(latency_ms, 0.95) AS p95,
                quantile_cont(latency_ms, 0.99) AS p99
            FROM samples
            WHERE run_id = ? AND sensor_id = ?
            """,
            [run_id, sensor_id],
        ).fetchone()
        return self._row_to_quantile_dict(row)

    def _quantiles_from_windows(
        self, run_id: str, column_name: str
    ) -> dict[str, float | int | None]:
        row = self.connection.execute(
            f"""
            SELECT
                COUNT({column_name}) AS count_value,
                quantile_cont({column_name}, 0.5) AS p50,
                quantile_cont({column_name}, 0.9) AS p90,
                quantile_cont({column_name}, 0.95) AS p95,
                quantile_cont({column_name}, 0.99) AS p99
            FROM window_metrics_1s
            WHERE run_id = ? AND {column_name} IS NOT NULL
            """,
            [run_id],
        ).fetchone()
        return self._row_to_quantile_dict(row)

    @staticmethod
    def _row_to_run(row: Any) -> dict[str, Any]:
        return {
            "run_id": row[0],
            "started_at": row[1],
            "finished_at": row[2],
            "duration_s": row[3],
            "stopped_early": bool(row[4]),
            "config_json": row[5],
            "counters": json.loads(row[6]) if row[6] else {},
        }

    @staticmethod
    def _row_to_quantile_dict(row: Any) -> dict[str, float | int | None]:
        if row is None:
            return {"count": 0, "p50": None, "p90": None, "p95": None, "p99": None}
        return {
            "count": int(row[0] or 0),
            "p50": (float(row[1]) if row[1] is not None else None),
            "p90": (float(row[2]) if row[2] is not None else None),
            "p95": (float(row[3]) if row[3] is not None else None),
            "p99": (float(row[4]) if row[4] is not None else None),
        }
