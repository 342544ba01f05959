from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
import tomllib

from kvasir import DEFAULT_KVASIR_URL, DEFAULT_POD_NAME
from metrics import DEFAULT_MIN_SAMPLES
from runner import BenchmarkConfig, SLOConfig


logger = logging.getLogger(__name__)

DEFAULT_SENSOR_IDS = ["TemperatureSensor1", "HumiditySensor1", "PressureSensor1"]
SLO_KEYS = ("p95_target_ms", "p99_target_ms", "slo_window_days", "burn_rate_threshold")


def _escape_toml_string(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _coerce_optional_string(value: object) -> str | None:
    if value is None:
        return None
    parsed = str(value).strip()
    return parsed or None


def _format_toml_value(value: object) -> str:
    if isinstance(value, str):
        return f'"{_escape_toml_string(value)}"'
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return str(value)
    if isinstance(value, list | tuple):
        return "[" + ", ".join(_format_toml_value(item) for item in value) + "]"
    raise TypeError(f"Unsupported TOML value type: {type(value)!r}")


def _optional_float(data: dict[str, object], key: str) -> float | None:
    value = data.get(key)
    return float(value) if value is not None else None


@dataclass(slots=True)
class BenchmarkProfile:
    name: str
    sensor_ids: list[str] = field(default_factory=lambda: list(DEFAULT_SENSOR_IDS))
    kvasir_url: str = DEFAULT_KVASIR_URL
    pod_name: str = DEFAULT_POD_NAME
    duration_s: float = 60.0
    interval_ms: float = 1000.0
    max_samples: int = 1000
    drain_timeout_s: float = 15.0
    min_samples: int = DEFAULT_MIN_SAMPLES
    endpoint: str | None = None
    region: str | None = None
    p95_target_ms: float | None = None
    p99_target_ms: float | None = None
    slo_window_days: int | None = None
    burn_rate_threshold: float | None = None

    @property
    def has_slo(self) -> bool:
        return self.p95_target_ms is not None or self.p99_target_ms is not None

    def slo_config(self) -> SLOConfig | None:
        if not self.has_slo:
            return None
        defaults = SLOConfig()
        return SLOConfig(
            p95_target_ms=(
                self.p95_target_ms if self.p95_target_ms is not None else defaults.p95_target_ms
            ),
            p99_target_ms=(
                self.p99_target_ms if self.p99_target_ms is not None else defaults.p99_target_ms
            ),
            window_days=(
                self.slo_window_days if self.slo_window_days is not None else defaults.window_days
            ),
            burn_rate_threshold=(
                self.burn_rate_threshold
                if self.burn_rate_threshold is not None
                else defaults.burn_rate_threshold
            ),
        )

    def to_config(self) -> BenchmarkConfig:
        return BenchmarkConfig(
            sensor_ids=tuple(self.sensor_ids),
            duration_s=self.duration_s,
            interval_ms=self.interval_ms,
            max_samples=self.max_samples,
            drain_timeout_s=self.drain_timeout_s,
            min_samples=self.min_samples,
            endpoint=self.endpoint,
            region=self.region,
            slo=self.slo_config(),
        )

    def to_dict(self) -> dict[str, object]:
        data: dict[str, object] = {
            "sensor_ids": list(self.sensor_ids),
            "kvasir_url": self.kvasir_url,
            "pod_name": self.pod_name,
            "duration_s": self.duration_s,
            "interval_ms": self.interval_ms,
            "max_samples": self.max_samples,
            "drain_timeout_s": self.drain_timeout_s,
            "min_samples": self.min_samples,
        }
        if self.endpoint:
            data["endpoint"] = self.endpoint
        if self.region:
            data["region"] = self.region
        for key in SLO_KEYS:
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, name: str, data: dict[str, object]) -> "BenchmarkProfile":
        sensor_ids_raw = data.get("sensor_ids")
        if sensor_ids_raw is None:
            raise ValueError(f"Profile {name!r} missing required field 'sensor_ids'")
        if not isinstance(sensor_ids_raw, list):
            raise ValueError(f"Profile {name!r}.sensor_ids must be an array")
        sensor_ids = [str(sensor).strip() for sensor in sensor_ids_raw if str(sensor).strip()]
        if not sensor_ids:
            raise ValueError(f"Profile {name!r}.sensor_ids must not be empty")

        slo_window_days = data.get("slo_window_days")
        return cls(
            name=name,
            sensor_ids=sensor_ids,
            kvasir_url=_coerce_optional_string(data.get("kvasir_url")) or DEFAULT_KVASIR_URL,
            pod_name=_coerce_optional_string(data.get("pod_name")) or DEFAULT_POD_NAME,
            duration_s=float(data.get("duration_s", 60.0)),
            interval_ms=float(data.get("interval_ms", 1000.0)),
            max_samples=int(data.get("max_samples", 1000)),
            drain_timeout_s=float(data.get("drain_timeout_s", 15.0)),
            min_samples=int(data.get("min_samples", DEFAULT_MIN_SAMPLES)),
            endpoint=_coerce_optional_string(data.get("endpoint")),
            region=_coerce_optional_string(data.get("region")),
            p95_target_ms=_optional_float(data, "p95_target_ms"),
            p99_target_ms=_optional_float(data, "p99_target_ms"),
            slo_window_days=int(slo_window_days) if slo_window_days is not None else None,
            burn_rate_threshold=_optional_float(data, "burn_rate_threshold"),
        )


class ProfileRegistry:
    def __init__(self, config_path: Path) -> None:
        self.config_path = config_path

    def load(self) -> dict[str, BenchmarkProfile]:
        raw = self._read_raw()
        profiles_raw = raw.get("profiles", {})
        if not isinstance(profiles_raw, dict):
            raise ValueError("Top-level 'profiles' must be a table")

        loaded: dict[str, BenchmarkProfile] = {}
        for name, data in profiles_raw.items():
            if not isinstance(data, dict):
                raise ValueError(f"Profile {name!r} entry must be a table")
            loaded[str(name)] = BenchmarkProfile.from_dict(str(name), data)
        logger.debug("Loaded %d profile(s) from %s", len(loaded), self.config_path)
        return loaded

    def list_profiles(self) -> list[BenchmarkProfile]:
        profiles = self.load()
        return [profiles[name] for name in sorted(profiles)]

    def save_profile(self, profile: BenchmarkProfile) -> None:
        if not profile.name.strip():
            raise ValueError("Profile name cannot be empty")

        raw = self._read_raw()
        profiles_raw = raw.setdefault("profiles", {})
        if not isinstance(profiles_raw, dict):
            raise ValueError("Top-level 'profiles' must be a table")

        profiles_raw[profile.name] = profile.to_dict()
        self._write_raw(raw)
        logger.debug("Saved profile %r to %s", profile.name, self.config_path)

    def remove_profile(self, name: str) -> None:
        raw = self._read_raw()
        profiles_raw = raw.get("profiles", {})
        if not isinstance(profiles_raw, dict):
            raise ValueError("Top-level 'profiles' must be a table")

        if name not in profiles_raw:
            raise KeyError(name)
        del profiles_raw[name]
        self._write_raw(raw)
        logger.debug("Removed profile %r from %s", name, self.config_path)

    def get_profile(self, name: str) -> BenchmarkProfile:
        profiles = self.load()
        if name not in profiles:
            raise KeyError(name)
        return profiles[name]

    def _read_raw(self) -> dict[str, object]:
        if not self.config_path.exists():
            return {"profiles": {}}

        with self.config_path.open("rb") as handle:
            parsed = tomllib.load(handle)
        if "profiles" not in parsed:
            parsed["profiles"] = {}
        return parsed

    def _write_raw(self, data: dict[str, object]) -> None:
        profiles_raw = data.get("profiles", {})
        if not isinstance(profiles_raw, dict):
            raise ValueError("Top-level 'profiles' must be a table")

        lines: list[str] = []
        for profile_name in sorted(profiles_raw):
            profile_data = profiles_raw[profile_name]
            if not isinstance(profile_data, dict):
                raise ValueError(f"Profile {profile_name!r} entry must be a table")

            quoted_name = _escape_toml_string(str(profile_name))
            lines.append(f'[profiles."{quoted_name}"]')
            for key in sorted(profile_data):
                lines.append(f"{key} = {_format_toml_value(profile_data[key])}")
            lines.append("")

        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        content = "\n".join(lines).strip()
        self.config_path.write_text(
            content + ("\n" if content else ""), encoding="utf-8"
        )
