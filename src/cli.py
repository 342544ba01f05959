from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime
import json
import logging
import os
from pathlib import Path
import sys
import time
import uuid

import typer

from kvasir import DEFAULT_KVASIR_URL, DEFAULT_POD_NAME, KvasirClient
from metrics import DEFAULT_MIN_SAMPLES, RunAggregate, aggregate_runs
from profiles import DEFAULT_SENSOR_IDS, BenchmarkProfile, ProfileRegistry
from runner import (
    BenchmarkConfig,
    BenchmarkOrchestrator,
    BenchmarkResult,
    ProgressSnapshot,
    SubscriptionError,
)
from storage import BenchmarkStorage


logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    """Configure root logger from KVASIR_BENCH_LOG_LEVEL env var (default: WARNING)."""
    level_name = os.environ.get("KVASIR_BENCH_LOG_LEVEL", "WARNING").upper()
    level = getattr(logging, level_name, logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


app = typer.Typer(no_args_is_help=True, help="Kvasir notification latency benchmark CLI")
profile_app = typer.Typer(no_args_is_help=True, help="Benchmark profile management commands")
report_app = typer.Typer(no_args_is_help=True, help="Report commands")
app.add_typer(profile_app, name="profile")
app.add_typer(report_app, name="report")


DEFAULT_PROFILE_CONFIG = Path("profiles.toml")
DEFAULT_BENCH_DB = Path("bench.duckdb")
DEFAULT_REPORT_INTERVAL_S = 5.0
QUANTILE_KEYS = ("p50", "p90", "p95", "p99")


@dataclass(slots=True)
class _RunProgress:
    run_id: str
    sensor_count: int
    duration_s: float
    interval_ms: float
    max_samples: int
    enabled: bool = True
    _interactive: bool = field(init=False, repr=False)
    _last_line_len: int = field(init=False, default=0, repr=False)
    _started: bool = field(init=False, default=False, repr=False)
    _finalized: bool = field(init=False, default=False, repr=False)

    def __post_init__(self) -> None:
        self._interactive = bool(self.enabled and sys.stderr.isatty())

    def start(self) -> None:
        if not self.enabled or self._started:
            return
        self._started = True
        typer.echo(
            (
                f"[run] run_id={self.run_id} sensors={self.sensor_count} "
                f"duration={self.duration_s:g}s interval={self.interval_ms:g}ms "
                f"max_samples={self.max_samples}"
            ),
            err=True,
        )

    def on_progress(self, snapshot: ProgressSnapshot) -> None:
        if not self.enabled:
            return
        self._emit_progress(snapshot, final=False)

    def finalize(self, result: BenchmarkResult | None = None) -> None:
        if not self.enabled or self._finalized:
            return
        self._finalized = True
        if result is not None:
            line = (
                f"[done] samples={result.summary.total_samples} "
                f"generated={result.counters.generated} "
                f"unmatched={result.counters.unmatched_discarded} "
                f"stopped_early={result.stopped_early}"
            )
            self._write(line, final=True)
        elif self._interactive and self._last_line_len:
            typer.echo("", err=True)

    def _emit_progress(self, snapshot: ProgressSnapshot, final: bool) -> None:
        percent = (
            (snapshot.samples / self.max_samples) * 100.0 if self.max_samples > 0 else 100.0
        )
        line = (
            f"[progress] {snapshot.elapsed_s:6.1f}s samples={snapshot.samples}/{self.max_samples} "
            f"({percent:5.1f}%) generated={snapshot.generated} pending={snapshot.pending} "
            f"fail={snapshot.generation_failures} "
            f"avg={snapshot.summary.average_latency_ms:.1f}ms "
            f"p95={snapshot.summary.p95_latency_ms:.1f}ms"
        )
        self._write(line, final=final)

    def _write(self, line: str, final: bool) -> None:
        if not self._interactive:
            typer.echo(line, err=True)
            return

        padded_line = line
        if len(line) < self._last_line_len:
            padded_line = line + (" " * (self._last_line_len - len(line)))
        self._last_line_len = len(line)
        typer.echo(f"\r{padded_line}", err=True, nl=final)


def _parse_sensor_ids(raw: str) -> list[str]:
    sensor_ids: list[str] = []
    for part in raw.split(","):
        sensor_id = part.strip()
        if sensor_id and sensor_id not in sensor_ids:
            sensor_ids.append(sensor_id)
    if not sensor_ids:
        raise ValueError("No sensor ids specified")
    return sensor_ids


def _resolve_profile(
    profile_name: str | None,
    config: Path,
    url: str | None,
    pod: str | None,
    sensors: str | None,
    duration_s: float | None,
    interval_ms: float | None,
    max_samples: int | None,
    drain_timeout_s: float | None,
    min_samples: int | None,
    endpoint: str | None,
    region: str | None,
    p95_target_ms: float | None,
    p99_target_ms: float | None,
) -> BenchmarkProfile:
    if profile_name:
        profile = ProfileRegistry(config).get_profile(profile_name)
    else:
        profile = BenchmarkProfile(name="adhoc")

    overrides: dict[str, object] = {
        "kvasir_url": url,
        "pod_name": pod,
        "duration_s": duration_s,
        "interval_ms": interval_ms,
        "max_samples": max_samples,
        "drain_timeout_s": drain_timeout_s,
        "min_samples": min_samples,
        "endpoint": endpoint,
        "region": region,
        "p95_target_ms": p95_target_ms,
        "p99_target_ms": p99_target_ms,
    }
    for attribute, value in overrides.items():
        if value is not None:
            setattr(profile, attribute, value)
    if sensors is not None:
        profile.sensor_ids = _parse_sensor_ids(sensors)
    return profile


def _config_json(profile: BenchmarkProfile, config: BenchmarkConfig) -> str:
    payload = config.to_dict()
    payload["kvasir_url"] = profile.kvasir_url
    payload["pod_name"] = profile.pod_name
    payload["profile"] = profile.name
    return json.dumps(payload, ensure_ascii=True)


async def _execute_run(
    client: KvasirClient,
    config: BenchmarkConfig,
    run_id: str,
    run_progress: _RunProgress,
    report_interval_s: float | None,
) -> BenchmarkResult:
    orchestrator = BenchmarkOrchestrator(
        config=config,
        submitter=client,
        subscriber=client,
        run_id=run_id,
        report_interval_s=report_interval_s if run_progress.enabled else None,
        on_progress=run_progress.on_progress if run_progress.enabled else None,
    )
    return await orchestrator.run()


async def _run_once(
    profile: BenchmarkProfile,
    config: BenchmarkConfig,
    run_id: str,
    run_progress: _RunProgress,
    report_interval_s: float | None,
) -> BenchmarkResult:
    async with KvasirClient(base_url=profile.kvasir_url, pod_name=profile.pod_name) as client:
        return await _execute_run(client, config, run_id, run_progress, report_interval_s)


async def _run_repeated(
    profile: BenchmarkProfile,
    config: BenchmarkConfig,
    base_run_id: str,
    runs: int,
    pause_s: float,
    storage: BenchmarkStorage,
    config_json: str,
    progress: bool,
    report_interval_s: float | None,
) -> tuple[list[BenchmarkResult], list[dict[str, str]]]:
    results: list[BenchmarkResult] = []
    failures: list[dict[str, str]] = []
    async with KvasirClient(base_url=profile.kvasir_url, pod_name=profile.pod_name) as client:
        for index in range(1, runs + 1):
            run_id = f"{base_run_id}-{index}"
            run_progress = _RunProgress(
                run_id=run_id,
                sensor_count=len(config.sensor_ids),
                duration_s=config.duration_s,
                interval_ms=config.interval_ms,
                max_samples=config.max_samples,
                enabled=progress,
            )
            run_progress.start()
            try:
                result = await _execute_run(
                    client, config, run_id, run_progress, report_interval_s
                )
            except SubscriptionError as exc:
                logger.warning("Run %s failed: %s", run_id, exc)
                typer.echo(f"Run {index}/{runs} failed: {exc}", err=True)
                failures.append({"run_id": run_id, "error": str(exc)})
                run_progress.finalize()
            else:
                run_progress.finalize(result)
                _persist_result(storage, result, config_json)
                results.append(result)

            if index < runs and pause_s > 0:
                await asyncio.sleep(pause_s)
    return results, failures


def _persist_result(
    storage: BenchmarkStorage, result: BenchmarkResult, config_json: str
) -> None:
    storage.create_run(
        run_id=result.run_id, started_at=result.started_at, config_json=config_json
    )
    storage.insert_samples(result.run_id, result.samples)
    storage.refresh_window_metrics(result.run_id)
    storage.finish_run(
        run_id=result.run_id,
        finished_at=result.finished_at,
        counters=asdict(result.counters),
        stopped_early=result.stopped_early,
    )
    logger.debug("Persisted run %s with %d samples", result.run_id, len(result.samples))


def _render_run_result(result: BenchmarkResult, db: Path) -> str:
    summary = result.summary
    counters = result.counters
    lines = [
        "Benchmark result",
        f"Run ID   : {result.run_id}",
        f"Duration : {result.finished_at - result.started_at:.3f}s",
        f"Stopped  : {'early (sample cap reached)' if result.stopped_early else 'after duration'}",
        f"DB       : {db}",
        "",
        "Events:",
        f"- generated={counters.generated} matched={counters.matched} "
        f"failures={counters.generation_failures}",
        f"- misses={counters.misses} backlog={counters.backlog_discarded} "
        f"malformed={counters.malformed} unmatched={counters.unmatched_discarded}",
        f"- clock_skew={counters.clock_skew} dropped_store_full={counters.dropped_store_full}",
        "",
        "Latency (ms):",
        f"- samples={summary.total_samples} avg={summary.average_latency_ms:.2f} "
        f"min={summary.min_latency_ms:.0f} max={summary.max_latency_ms:.0f}",
        f"- p50={summary.p50_latency_ms:.2f} p90={summary.p90_latency_ms:.2f} "
        f"p95={summary.p95_latency_ms:.2f} p99={summary.p99_latency_ms:.2f} "
        f"p99.9={summary.p999_latency_ms:.2f}",
        f"- tail_ratio={summary.tail_ratio:.2f}",
    ]

    span_breakdown = result.analysis.span_breakdown
    if span_breakdown:
        lines.extend(["", "Spans:"])
        for span_name, values in span_breakdown.items():
            lines.append(
                f"- {span_name:<18} avg={values['avg_ms']:.2f}ms share={values['share_pct']:.1f}%"
            )

    if counters.subscription_lost:
        lines.extend(["", "Warning: event stream lost during the run; later arrivals were not observed."])

    slo = result.analysis.slo
    if slo is not None:
        lines.extend(
            [
                "",
                f"SLO ({slo.window_days}d window):",
                f"- p95 {slo.p95.actual_ms:.2f}ms <= {slo.p95.target_ms:.0f}ms "
                f"{'OK' if slo.p95.compliant else 'VIOLATED'} burn={slo.p95.error_budget_burn:.2f}",
                f"- p99 {slo.p99.actual_ms:.2f}ms <= {slo.p99.target_ms:.0f}ms "
                f"{'OK' if slo.p99.compliant else 'VIOLATED'} burn={slo.p99.error_budget_burn:.2f}",
                f"- overall={'OK' if slo.overall_compliant else 'VIOLATED'} "
                f"burn_rate_alert={slo.burn_rate_alert}",
            ]
        )
    return "\n".join(lines)


def _render_aggregate(
    aggregate: RunAggregate | None, results: list[BenchmarkResult], failed: int, db: Path
) -> str:
    lines = [
        "Multi-run summary",
        f"Runs     : {len(results) + failed}",
        f"Succeeded: {len(results)}",
        f"Failed   : {failed}",
        f"DB       : {db}",
        "",
        "Runs:",
    ]
    for result in results:
        lines.append(
            f"- {result.run_id} samples={result.summary.total_samples} "
            f"avg={result.summary.average_latency_ms:.2f}ms "
            f"p95={result.summary.p95_latency_ms:.2f}ms"
        )
    if aggregate is not None:
        lines.extend(
            [
                "",
                "Average latency across runs (ms):",
                f"- mean={aggregate.mean_ms:.2f} std_dev={aggregate.std_dev_ms:.2f} "
                f"cv={aggregate.coefficient_of_variation:.1f}%",
                f"- median={aggregate.median_ms:.2f} p95={aggregate.p95_ms:.2f} "
                f"min={aggregate.min_ms:.2f} max={aggregate.max_ms:.2f}",
            ]
        )
    return "\n".join(lines)


def _format_quantile(value: object) -> str:
    if value is None:
        return "-"
    return f"{float(value):.2f}"


def _render_quantile_line(label: str, quantiles: dict[str, object], unit: str | None = None) -> str:
    label_with_unit = label if not unit else f"{label} ({unit})"
    count = int(quantiles.get("count") or 0)
    values = " ".join(
        f"{key}={_format_quantile(quantiles.get(key))}" for key in QUANTILE_KEYS
    )
    return f"- {label_with_unit:<24} count={count:<5} {values}"


def _render_report_summary(summary: dict[str, object], db: Path) -> str:
    latency = summary.get("latency", {})
    per_sensor = summary.get("per_sensor", {})
    throughput = summary.get("throughput", {})
    counters = summary.get("counters", {})
    lines = [
        "Benchmark summary",
        f"Run ID : {summary.get('run_id')}",
        f"Sensors: {len(per_sensor)}",
        f"DB     : {db}",
        "",
        "Latency (ms):",
        f"- samples={latency.get('total_samples', 0)} "
        f"avg={float(latency.get('average_latency_ms', 0.0)):.2f} "
        f"p50={float(latency.get('p50_latency_ms', 0.0)):.2f} "
        f"p95={float(latency.get('p95_latency_ms', 0.0)):.2f} "
        f"p99={float(latency.get('p99_latency_ms', 0.0)):.2f} "
        f"tail_ratio={float(latency.get('tail_ratio', 0.0)):.2f}",
        "",
        "Per sensor:",
    ]
    for sensor_id in sorted(per_sensor):
        lines.append(_render_quantile_line(sensor_id, per_sensor[sensor_id], unit="ms"))
    lines.extend(
        [
            "",
            "Throughput:",
            _render_quantile_line(
                "samples/s", throughput.get("samples_per_s", {}), unit="1s windows"
            ),
            _render_quantile_line(
                "window avg", throughput.get("window_avg_latency_ms", {}), unit="ms"
            ),
        ]
    )
    if counters:
        lines.extend(["", "Counters:"])
        lines.append(
            "- " + " ".join(f"{key}={counters[key]}" for key in sorted(counters))
        )
    return "\n".join(lines)


def _parse_config_json(config_json: object) -> dict[str, object]:
    if not isinstance(config_json, str) or not config_json.strip():
        return {}
    try:
        payload = json.loads(config_json)
    except json.JSONDecodeError:
        return {}
    if isinstance(payload, dict):
        return payload
    return {}


def _format_timestamp(value: object) -> str:
    if value is None:
        return "-"
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return "-"
    return datetime.fromtimestamp(numeric).astimezone().isoformat(timespec="seconds")


def _format_duration(value: object) -> str:
    if value is None:
        return "-"
    try:
        return f"{float(value):.3f}s"
    except (TypeError, ValueError):
        return "-"


def _render_report_list(runs: list[dict[str, object]], db: Path) -> str:
    lines = [
        "Benchmark runs",
        f"Total : {len(runs)}",
        f"DB    : {db}",
        "",
        "Runs:",
    ]
    for run in runs:
        avg_latency = run.get("avg_latency_ms")
        avg_text = f"{float(avg_latency):.2f}ms" if avg_latency is not None else "-"
        lines.append(
            (
                f"- {run.get('run_id', '-')} started={_format_timestamp(run.get('started_at'))} "
                f"duration={_format_duration(run.get('duration_s'))} "
                f"sensors={int(run.get('sensor_count') or 0)} "
                f"samples={int(run.get('sample_count') or 0)} avg={avg_text} "
                f"early={bool(run.get('stopped_early'))}"
            )
        )
    return "\n".join(lines)


@profile_app.command("add")
def profile_add(
    name: str = typer.Option(..., "--name", help="Profile name"),
    url: str = typer.Option(DEFAULT_KVASIR_URL, "--url", help="Kvasir base URL"),
    pod: str = typer.Option(DEFAULT_POD_NAME, "--pod", help="Kvasir pod name"),
    sensors: str = typer.Option(
        ",".join(DEFAULT_SENSOR_IDS), "--sensors", help="Comma-separated sensor ids"
    ),
    duration_s: float = typer.Option(60.0, "--duration-s", min=0, help="Run duration"),
    interval_ms: float = typer.Option(
        1000.0, "--interval-ms", help="Milliseconds between generation ticks"
    ),
    max_samples: int = typer.Option(1000, "--max-samples", min=1, help="Sample cap"),
    drain_timeout_s: float = typer.Option(
        15.0, "--drain-timeout-s", min=0, help="Grace period for in-flight events"
    ),
    min_samples: int = typer.Option(
        DEFAULT_MIN_SAMPLES, "--min-samples", min=1, help="Minimum samples for percentiles"
    ),
    endpoint: str | None = typer.Option(None, "--endpoint", help="Endpoint label"),
    region: str | None = typer.Option(None, "--region", help="Region label"),
    p95_target_ms: float | None = typer.Option(
        None, "--p95-target-ms", help="SLO target for p95 latency"
    ),
    p99_target_ms: float | None = typer.Option(
        None, "--p99-target-ms", help="SLO target for p99 latency"
    ),
    config: Path = typer.Option(
        DEFAULT_PROFILE_CONFIG, "--config", help="Profile registry file", hidden=True
    ),
) -> None:
    try:
        profile = BenchmarkProfile(
            name=name,
            sensor_ids=_parse_sensor_ids(sensors),
            kvasir_url=url,
            pod_name=pod,
            duration_s=duration_s,
            interval_ms=interval_ms,
            max_samples=max_samples,
            drain_timeout_s=drain_timeout_s,
            min_samples=min_samples,
            endpoint=endpoint,
            region=region,
            p95_target_ms=p95_target_ms,
            p99_target_ms=p99_target_ms,
        )
        profile.to_config()
        ProfileRegistry(config).save_profile(profile)
    except ValueError as exc:
        typer.echo(f"Invalid profile: {exc}")
        raise typer.Exit(1)
    logger.debug("Profile %r added to %s", name, config)
    typer.echo(f"Profile added: {name}")


@profile_app.command("list")
def profile_list(
    config: Path = typer.Option(
        DEFAULT_PROFILE_CONFIG, "--config", help="Profile registry file", hidden=True
    ),
) -> None:
    registry = ProfileRegistry(config)
    profiles = registry.list_profiles()
    if not profiles:
        typer.echo("No profiles configured.")
        return

    for profile in profiles:
        typer.echo(
            f"{profile.name}\t{profile.kvasir_url}\t{profile.pod_name}\t"
            f"{','.join(profile.sensor_ids)}\t{profile.duration_s:g}s\t{profile.interval_ms:g}ms"
        )


@profile_app.command("remove")
def profile_remove(
    name: str = typer.Option(..., "--name", help="Profile name"),
    config: Path = typer.Option(
        DEFAULT_PROFILE_CONFIG, "--config", help="Profile registry file", hidden=True
    ),
) -> None:
    registry = ProfileRegistry(config)
    try:
        registry.remove_profile(name)
    except KeyError:
        typer.echo(f"Profile not found: {name}")
        raise typer.Exit(1)
    typer.echo(f"Profile removed: {name}")


def _load_run_settings(
    profile_name: str | None,
    config: Path,
    **overrides: object,
) -> tuple[BenchmarkProfile, BenchmarkConfig]:
    try:
        profile = _resolve_profile(profile_name, config, **overrides)
        if not profile.kvasir_url.startswith(("http://", "https://")):
            raise ValueError(f"Kvasir URL must start with http:// or https://: {profile.kvasir_url}")
        return profile, profile.to_config()
    except KeyError:
        typer.echo(f"Profile not found: {profile_name}")
        raise typer.Exit(1)
    except ValueError as exc:
        typer.echo(f"Invalid benchmark configuration: {exc}")
        raise typer.Exit(1)


@app.command("run")
def run_benchmark(
    profile: str | None = typer.Option(None, "--profile", help="Named profile to run"),
    url: str | None = typer.Option(None, "--url", help="Kvasir base URL"),
    pod: str | None = typer.Option(None, "--pod", help="Kvasir pod name"),
    sensors: str | None = typer.Option(None, "--sensors", help="Comma-separated sensor ids"),
    duration_s: float | None = typer.Option(None, "--duration-s", help="Run duration"),
    interval_ms: float | None = typer.Option(
        None, "--interval-ms", help="Milliseconds between generation ticks"
    ),
    max_samples: int | None = typer.Option(None, "--max-samples", help="Sample cap"),
    drain_timeout_s: float | None = typer.Option(
        None, "--drain-timeout-s", help="Grace period for in-flight events"
    ),
    min_samples: int | None = typer.Option(
        None, "--min-samples", help="Minimum samples for percentiles"
    ),
    endpoint: str | None = typer.Option(None, "--endpoint", help="Endpoint label"),
    region: str | None = typer.Option(None, "--region", help="Region label"),
    p95_target_ms: float | None = typer.Option(
        None, "--p95-target-ms", help="SLO target for p95 latency"
    ),
    p99_target_ms: float | None = typer.Option(
        None, "--p99-target-ms", help="SLO target for p99 latency"
    ),
    db: Path = typer.Option(DEFAULT_BENCH_DB, "--db", "-d", help="DuckDB output file"),
    json_output: bool = typer.Option(
        False, "--json", help="Output machine-readable JSON"
    ),
    progress: bool = typer.Option(
        True,
        "--progress/--no-progress",
        help="Show live progress on stderr",
    ),
    report_interval_s: float = typer.Option(
        DEFAULT_REPORT_INTERVAL_S,
        "--report-interval-s",
        help="Seconds between progress reports",
        hidden=True,
    ),
    config: Path = typer.Option(
        DEFAULT_PROFILE_CONFIG, "--config", help="Profile registry file", hidden=True
    ),
    run_id: str | None = typer.Option(
        None, "--run-id", help="Optional run id", hidden=True
    ),
) -> None:
    benchmark_profile, benchmark_config = _load_run_settings(
        profile,
        config,
        url=url,
        pod=pod,
        sensors=sensors,
        duration_s=duration_s,
        interval_ms=interval_ms,
        max_samples=max_samples,
        drain_timeout_s=drain_timeout_s,
        min_samples=min_samples,
        endpoint=endpoint,
        region=region,
        p95_target_ms=p95_target_ms,
        p99_target_ms=p99_target_ms,
    )

    actual_run_id = run_id or f"run-{uuid.uuid4().hex[:8]}"
    run_progress = _RunProgress(
        run_id=actual_run_id,
        sensor_count=len(benchmark_config.sensor_ids),
        duration_s=benchmark_config.duration_s,
        interval_ms=benchmark_config.interval_ms,
        max_samples=benchmark_config.max_samples,
        enabled=progress,
    )
    run_progress.start()
    logger.info(
        "Starting benchmark run %s against %s (pod=%s)",
        actual_run_id, benchmark_profile.kvasir_url, benchmark_profile.pod_name,
    )
    try:
        result = asyncio.run(
            _run_once(
                benchmark_profile,
                benchmark_config,
                actual_run_id,
                run_progress,
                report_interval_s,
            )
        )
    except SubscriptionError as exc:
        run_progress.finalize()
        typer.echo(f"Benchmark aborted: {exc}")
        raise typer.Exit(1)
    run_progress.finalize(result)

    storage = BenchmarkStorage(db)
    try:
        _persist_result(
            storage, result, _config_json(benchmark_profile, benchmark_config)
        )
    finally:
        storage.close()
    logger.info("Benchmark run %s finished", actual_run_id)

    if json_output:
        payload = result.to_dict()
        payload["db"] = str(db)
        typer.echo(json.dumps(payload, ensure_ascii=False))
        return
    typer.echo(_render_run_result(result, db=db))


@app.command("repeat")
def repeat_benchmark(
    runs: int = typer.Option(5, "--runs", "-n", min=1, help="Number of benchmark runs"),
    pause_s: float = typer.Option(
        5.0, "--pause-s", min=0, help="Pause between runs in seconds"
    ),
    profile: str | None = typer.Option(None, "--profile", help="Named profile to run"),
    url: str | None = typer.Option(None, "--url", help="Kvasir base URL"),
    pod: str | None = typer.Option(None, "--pod", help="Kvasir pod name"),
    sensors: str | None = typer.Option(None, "--sensors", help="Comma-separated sensor ids"),
    duration_s: float | None = typer.Option(None, "--duration-s", help="Run duration"),
    interval_ms: float | None = typer.Option(
        None, "--interval-ms", help="Milliseconds between generation ticks"
    ),
    max_samples: int | None = typer.Option(None, "--max-samples", help="Sample cap"),
    drain_timeout_s: float | None = typer.Option(
        None, "--drain-timeout-s", help="Grace period for in-flight events"
    ),
    db: Path = typer.Option(DEFAULT_BENCH_DB, "--db", "-d", help="DuckDB output file"),
    json_output: bool = typer.Option(
        False, "--json", help="Output machine-readable JSON"
    ),
    progress: bool = typer.Option(
        True,
        "--progress/--no-progress",
        help="Show live progress on stderr",
    ),
    config: Path = typer.Option(
        DEFAULT_PROFILE_CONFIG, "--config", help="Profile registry file", hidden=True
    ),
    run_id: str | None = typer.Option(
        None, "--run-id", help="Base run id; runs are suffixed -1..-N", hidden=True
    ),
) -> None:
    benchmark_profile, benchmark_config = _load_run_settings(
        profile,
        config,
        url=url,
        pod=pod,
        sensors=sensors,
        duration_s=duration_s,
        interval_ms=interval_ms,
        max_samples=max_samples,
        drain_timeout_s=drain_timeout_s,
        min_samples=None,
        endpoint=None,
        region=None,
        p95_target_ms=None,
        p99_target_ms=None,
    )

    base_run_id = run_id or f"repeat-{uuid.uuid4().hex[:8]}"
    started = time.perf_counter()
    storage = BenchmarkStorage(db)
    try:
        results, failures = asyncio.run(
            _run_repeated(
                benchmark_profile,
                benchmark_config,
                base_run_id,
                runs,
                pause_s,
                storage,
                _config_json(benchmark_profile, benchmark_config),
                progress,
                DEFAULT_REPORT_INTERVAL_S,
            )
        )
    finally:
        storage.close()
    logger.info(
        "Completed %d/%d runs in %.1fs", len(results), runs, time.perf_counter() - started
    )

    aggregate = aggregate_runs(
        [
            result.summary.average_latency_ms
            for result in results
            if result.summary.total_samples > 0
        ]
    )
    if json_output:
        typer.echo(
            json.dumps(
                {
                    "db": str(db),
                    "runs": [result.to_dict() for result in results],
                    "failed": failures,
                    "aggregate": asdict(aggregate) if aggregate is not None else None,
                },
                ensure_ascii=False,
            )
        )
    else:
        typer.echo(_render_aggregate(aggregate, results, len(failures), db=db))
    if not results:
        raise typer.Exit(1)


@report_app.command("summary")
def report_summary(
    run_id: str | None = typer.Option(
        None, "--run-id", help="Run identifier. Defaults to latest run."
    ),
    min_samples: int = typer.Option(
        DEFAULT_MIN_SAMPLES, "--min-samples", min=1, help="Minimum samples for percentiles"
    ),
    json_output: bool = typer.Option(
        False, "--json", help="Output machine-readable JSON"
    ),
    db: Path = typer.Option(DEFAULT_BENCH_DB, "--db", "-d", help="DuckDB output file"),
) -> None:
    storage = BenchmarkStorage(db)
    try:
        actual_run_id = run_id
        if not actual_run_id:
            runs = storage.list_runs()
            if not runs:
                typer.echo("No runs found.")
                raise typer.Exit(1)
            actual_run_id = str(runs[0]["run_id"])

        try:
            summary = storage.get_run_summary(actual_run_id, min_samples=min_samples)
        except KeyError:
            typer.echo(f"Run not found: {actual_run_id}")
            raise typer.Exit(1)

        if json_output:
            typer.echo(json.dumps(summary, ensure_ascii=False))
        else:
            typer.echo(_render_report_summary(summary, db=db))
    finally:
        storage.close()


@report_app.command("list")
def report_list(
    limit: int | None = typer.Option(
        None, "--limit", "-n", min=1, help="Maximum number of runs to show"
    ),
    json_output: bool = typer.Option(
        False, "--json", help="Output machine-readable JSON"
    ),
    db: Path = typer.Option(DEFAULT_BENCH_DB, "--db", "-d", help="DuckDB output file"),
) -> None:
    storage = BenchmarkStorage(db)
    try:
        runs = storage.list_runs_with_stats()
        if not runs:
            typer.echo("No runs found.")
            raise typer.Exit(1)

        if limit is not None:
            runs = runs[:limit]

        output_runs: list[dict[str, object]] = []
        for run in runs:
            config = _parse_config_json(run.get("config_json"))
            output_runs.append(
                {
                    "run_id": run.get("run_id"),
                    "started_at": run.get("started_at"),
                    "finished_at": run.get("finished_at"),
                    "duration_s": run.get("duration_s"),
                    "started_at_iso": _format_timestamp(run.get("started_at")),
                    "finished_at_iso": _format_timestamp(run.get("finished_at")),
                    "stopped_early": run.get("stopped_early"),
                    "sample_count": run.get("sample_count"),
                    "sensor_count": run.get("sensor_count"),
                    "avg_latency_ms": run.get("avg_latency_ms"),
                    "clock_skew_count": run.get("clock_skew_count"),
                    "kvasir_url": config.get("kvasir_url"),
                    "profile": config.get("profile"),
                }
            )

        if json_output:
            typer.echo(
                json.dumps(
                    {
                        "db": str(db),
                        "total": len(output_runs),
                        "runs": output_runs,
                    },
                    ensure_ascii=False,
                )
            )
            return

        typer.echo(_render_report_list(output_runs, db=db))
    finally:
        storage.close()


@report_app.command("remove")
def report_remove(
    run_id: str = typer.Option(..., "--run-id", help="Run identifier to remove"),
    db: Path = typer.Option(DEFAULT_BENCH_DB, "--db", "-d", help="DuckDB output file"),
) -> None:
    storage = BenchmarkStorage(db)
    try:
        deleted = storage.delete_run(run_id=run_id)
        if not deleted:
            typer.echo(f"Run not found: {run_id}")
            raise typer.Exit(1)
        typer.echo(f"Run removed: {run_id}")
    finally:
        storage.close()


def main() -> None:
    _setup_logging()
    app()


if __name__ == "__main__":
    main()
