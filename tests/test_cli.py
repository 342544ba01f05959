from __future__ import annotations

import asyncio
import json
from pathlib import Path
import sys

import pytest
from typer.testing import CliRunner

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from cli import app
from records import Measurement, Notification, SubmitResult
from runner import SubscriptionError


class FakeSubscription:
    def __init__(self, client: "FakeKvasirClient") -> None:
        self.client = client

    def unsubscribe(self) -> None:
        self.client.callback = None


class FakeKvasirClient:
    instances: list["FakeKvasirClient"] = []

    def __init__(self, base_url: str, pod_name: str) -> None:
        self.base_url = base_url
        self.pod_name = pod_name
        self.callback = None
        self.submitted: list[Measurement] = []
        self.closed = False
        FakeKvasirClient.instances.append(self)

    async def __aenter__(self) -> "FakeKvasirClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        self.closed = True

    async def submit(self, measurement: Measurement) -> SubmitResult:
        self.submitted.append(measurement)
        asyncio.get_running_loop().call_later(0.005, self._notify, measurement)
        return SubmitResult(success=True)

    async def subscribe(self, on_notification) -> FakeSubscription:  # noqa: ANN001
        self.callback = on_notification
        return FakeSubscription(self)

    def _notify(self, measurement: Measurement) -> None:
        if self.callback is not None:
            self.callback(
                Notification(timestamp=measurement.timestamp, sensor_id=measurement.sensor_id)
            )


class RefusingKvasirClient(FakeKvasirClient):
    async def subscribe(self, on_notification) -> FakeSubscription:  # noqa: ANN001
        raise SubscriptionError("Event stream returned HTTP 503")


@pytest.fixture
def cli_runner() -> CliRunner:
    return CliRunner()


@pytest.fixture(autouse=True)
def default_fake_kvasir_client(monkeypatch: pytest.MonkeyPatch) -> None:
    FakeKvasirClient.instances = []
    monkeypatch.setattr("cli.KvasirClient", FakeKvasirClient)


def _run_args(tmp_path: Path, *extra: str) -> list[str]:
    return [
        "run",
        "--sensors",
        "S1,S2",
        "--duration-s",
        "0.2",
        "--interval-ms",
        "50",
        "--drain-timeout-s",
        "2",
        "--no-progress",
        "--db",
        str(tmp_path / "bench.duckdb"),
        "--config",
        str(tmp_path / "profiles.toml"),
        *extra,
    ]


def test_profile_add_list_remove(cli_runner: CliRunner, tmp_path: Path) -> None:
    config_path = tmp_path / "profiles.toml"

    add_result = cli_runner.invoke(
        app,
        [
            "profile",
            "add",
            "--name",
            "local",
            "--url",
            "http://kvasir.local:8080",
            "--sensors",
            "S1, S2",
            "--duration-s",
            "10",
            "--config",
            str(config_path),
        ],
    )
    assert add_result.exit_code == 0
    assert "Profile added: local" in add_result.stdout

    list_result = cli_runner.invoke(app, ["profile", "list", "--config", str(config_path)])
    assert list_result.exit_code == 0
    assert "local" in list_result.stdout
    assert "http://kvasir.local:8080" in list_result.stdout
    assert "S1,S2" in list_result.stdout

    remove_result = cli_runner.invoke(
        app, ["profile", "remove", "--name", "local", "--config", str(config_path)]
    )
    assert remove_result.exit_code == 0

    list_result_after = cli_runner.invoke(
        app, ["profile", "list", "--config", str(config_path)]
    )
    assert list_result_after.exit_code == 0
    assert "No profiles configured." in list_result_after.stdout


def test_profile_add_rejects_invalid_values(cli_runner: CliRunner, tmp_path: Path) -> None:
    config_path = tmp_path / "profiles.toml"
    result = cli_runner.invoke(
        app,
        [
            "profile",
            "add",
            "--name",
            "broken",
            "--sensors",
            " , ",
            "--config",
            str(config_path),
        ],
    )
    assert result.exit_code == 1
    assert "Invalid profile" in result.stdout
    assert not config_path.exists()


def test_profile_remove_missing(cli_runner: CliRunner, tmp_path: Path) -> None:
    result = cli_runner.invoke(
        app, ["profile", "remove", "--name", "nope", "--config", str(tmp_path / "p.toml")]
    )
    assert result.exit_code == 1
    assert "Profile not found: nope" in result.stdout


def test_run_persists_result_and_prints_json(cli_runner: CliRunner, tmp_path: Path) -> None:
    result = cli_runner.invoke(app, _run_args(tmp_path, "--json", "--run-id", "run-cli"))

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["run_id"] == "run-cli"
    assert payload["db"] == str(tmp_path / "bench.duckdb")
    assert payload["counters"]["generated"] >= 2
    assert payload["counters"]["matched"] == payload["counters"]["generated"]
    assert payload["summary"]["total_samples"] == payload["counters"]["matched"]
    assert FakeKvasirClient.instances[0].base_url == "http://localhost:8080"
    assert FakeKvasirClient.instances[0].pod_name == "alice"
    assert FakeKvasirClient.instances[0].closed is True

    list_result = cli_runner.invoke(
        app, ["report", "list", "--json", "--db", str(tmp_path / "bench.duckdb")]
    )
    assert list_result.exit_code == 0
    runs = json.loads(list_result.stdout)["runs"]
    assert [run["run_id"] for run in runs] == ["run-cli"]
    assert runs[0]["sample_count"] == payload["summary"]["total_samples"]
    assert runs[0]["sensor_count"] == 2

    summary_result = cli_runner.invoke(
        app,
        ["report", "summary", "--json", "--min-samples", "1", "--db", str(tmp_path / "bench.duckdb")],
    )
    assert summary_result.exit_code == 0
    summary = json.loads(summary_result.stdout)
    assert summary["run_id"] == "run-cli"
    assert set(summary["per_sensor"]) == {"S1", "S2"}


def test_run_prints_text_summary(cli_runner: CliRunner, tmp_path: Path) -> None:
    result = cli_runner.invoke(
        app, _run_args(tmp_path, "--p95-target-ms", "1500", "--p99-target-ms", "2500")
    )

    assert result.exit_code == 0, result.output
    assert "Benchmark result" in result.stdout
    assert "Latency (ms):" in result.stdout
    assert "SLO (30d window):" in result.stdout


def test_run_uses_profile_with_overrides(cli_runner: CliRunner, tmp_path: Path) -> None:
    config_path = tmp_path / "profiles.toml"
    cli_runner.invoke(
        app,
        [
            "profile",
            "add",
            "--name",
            "remote",
            "--url",
            "https://kvasir.example.org",
            "--pod",
            "bob",
            "--sensors",
            "P1",
            "--duration-s",
            "30",
            "--config",
            str(config_path),
        ],
    )

    result = cli_runner.invoke(
        app,
        [
            "run",
            "--profile",
            "remote",
            "--duration-s",
            "0.1",
            "--interval-ms",
            "20",
            "--no-progress",
            "--json",
            "--db",
            str(tmp_path / "bench.duckdb"),
            "--config",
            str(config_path),
        ],
    )

    assert result.exit_code == 0, result.output
    client = FakeKvasirClient.instances[0]
    assert client.base_url == "https://kvasir.example.org"
    assert client.pod_name == "bob"
    assert {measurement.sensor_id for measurement in client.submitted} == {"P1"}


def test_run_with_unknown_profile(cli_runner: CliRunner, tmp_path: Path) -> None:
    result = cli_runner.invoke(app, _run_args(tmp_path, "--profile", "missing"))
    assert result.exit_code == 1
    assert "Profile not found: missing" in result.stdout


def test_run_rejects_invalid_configuration(cli_runner: CliRunner, tmp_path: Path) -> None:
    result = cli_runner.invoke(app, _run_args(tmp_path, "--max-samples", "0"))
    assert result.exit_code == 1
    assert "Invalid benchmark configuration" in result.stdout

    result = cli_runner.invoke(app, _run_args(tmp_path, "--url", "kvasir.local"))
    assert result.exit_code == 1
    assert "Invalid benchmark configuration" in result.stdout


def test_run_aborts_when_subscription_fails(
    cli_runner: CliRunner, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr("cli.KvasirClient", RefusingKvasirClient)

    result = cli_runner.invoke(app, _run_args(tmp_path))

    assert result.exit_code == 1
    assert "Benchmark aborted" in result.stdout
    assert FakeKvasirClient.instances[0].submitted == []

    list_result = cli_runner.invoke(app, ["report", "list", "--db", str(tmp_path / "bench.duckdb")])
    assert list_result.exit_code == 1
    assert "No runs found." in list_result.stdout


def test_repeat_aggregates_runs(cli_runner: CliRunner, tmp_path: Path) -> None:
    args = _run_args(tmp_path, "--json", "--run-id", "batch")
    args[0] = "repeat"
    result = cli_runner.invoke(app, [*args, "--runs", "2", "--pause-s", "0"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert [run["run_id"] for run in payload["runs"]] == ["batch-1", "batch-2"]
    assert payload["failed"] == []
    assert payload["aggregate"]["runs"] == 2

    list_result = cli_runner.invoke(
        app, ["report", "list", "--json", "--db", str(tmp_path / "bench.duckdb")]
    )
    assert json.loads(list_result.stdout)["total"] == 2


def test_repeat_reports_failed_runs(
    cli_runner: CliRunner, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr("cli.KvasirClient", RefusingKvasirClient)
    args = _run_args(tmp_path)
    args[0] = "repeat"

    result = cli_runner.invoke(app, [*args, "--runs", "2", "--pause-s", "0"])

    assert result.exit_code == 1
    assert "Failed   : 2" in result.stdout


def test_report_summary_without_runs(cli_runner: CliRunner, tmp_path: Path) -> None:
    result = cli_runner.invoke(
        app, ["report", "summary", "--db", str(tmp_path / "bench.duckdb")]
    )
    assert result.exit_code == 1
    assert "No runs found." in result.stdout


def test_report_summary_and_remove(cli_runner: CliRunner, tmp_path: Path) -> None:
    db = str(tmp_path / "bench.duckdb")
    run_result = cli_runner.invoke(app, _run_args(tmp_path, "--run-id", "to-remove"))
    assert run_result.exit_code == 0, run_result.output

    summary_result = cli_runner.invoke(
        app, ["report", "summary", "--run-id", "to-remove", "--db", db]
    )
    assert summary_result.exit_code == 0
    assert "Benchmark summary" in summary_result.stdout
    assert "Per sensor:" in summary_result.stdout

    missing_result = cli_runner.invoke(
        app, ["report", "summary", "--run-id", "nope", "--db", db]
    )
    assert missing_result.exit_code == 1
    assert "Run not found: nope" in missing_result.stdout

    remove_result = cli_runner.invoke(app, ["report", "remove", "--run-id", "to-remove", "--db", db])
    assert remove_result.exit_code == 0
    assert "Run removed: to-remove" in remove_result.stdout

    remove_again = cli_runner.invoke(app, ["report", "remove", "--run-id", "to-remove", "--db", db])
    assert remove_again.exit_code == 1
