"""
Monitor configuration loaded from YAML.

Every threshold has a default; only the database and pipelines sections
are required. Unknown keys inside a section are rejected so typos do not
silently fall back to defaults.
"""
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from alerting.generator import WatchedTable
from decisioning.rules import HealthThresholds
from observability.anomaly import BaselineConfig


REQUIRED_KEYS = ["database", "pipelines"]


@dataclass
class MetricsSettings:
    recompute_days: int = 7
    max_workers: int = 4
    delta_lookback_days: int = 30


@dataclass
class HealthSettings:
    window_days: int = 7
    critical_failures: int = 3
    warning_failures: int = 1
    min_success_rate: float = 95.0

    def thresholds(self) -> HealthThresholds:
        return HealthThresholds(
            critical_failures=self.critical_failures,
            warning_failures=self.warning_failures,
            min_success_rate=self.min_success_rate,
        )


@dataclass
class AlertSettings:
    window_minutes: int = 60
    stale_after_hours: int = 24
    bucket_minutes: int = 60
    lookback_hours: int = 48
    webhook_url: Optional[str] = None
    watched_models: List[str] = field(default_factory=list)
    watched_tables: List[WatchedTable] = field(default_factory=list)


@dataclass
class MonitorConfig:
    """
    Full monitor configuration.

    Attributes:
        database_path: DuckDB file (or ":memory:")
        pipelines: Explicit pipeline name -> model names mapping
        volume_tables: Warehouse relations monitored for volume anomalies
        report_dir: Directory for Markdown reports
    """
    database_path: str
    pipelines: Dict[str, List[str]] = field(default_factory=dict)
    metrics: MetricsSettings = field(default_factory=MetricsSettings)
    baseline: BaselineConfig = field(default_factory=BaselineConfig)
    quality_window_days: int = 30
    health: HealthSettings = field(default_factory=HealthSettings)
    alerts: AlertSettings = field(default_factory=AlertSettings)
    volume_tables: List[WatchedTable] = field(default_factory=list)
    report_dir: str = "output"

    @property
    def mapped_models(self) -> List[str]:
        return sorted({model for models in self.pipelines.values() for model in models})

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "MonitorConfig":
        """
        Build a config from parsed YAML.

        Raises:
            ValueError: If a required key is missing or a section is malformed
        """
        if not isinstance(raw, dict):
            raise ValueError("Config must be a mapping")

        for key in REQUIRED_KEYS:
            if key not in raw:
                raise ValueError(f"Missing required config key: {key}")

        database = raw["database"] or {}
        if "path" not in database:
            raise ValueError("Missing required config key: database.path")

        alerts_raw = dict(raw.get("alerts") or {})
        alerts_raw["watched_tables"] = _tables(alerts_raw.get("watched_tables"), "alerts.watched_tables")
        alerts_raw["watched_models"] = list(alerts_raw.get("watched_models") or [])

        return cls(
            database_path=str(database["path"]),
            pipelines=_pipelines(raw["pipelines"]),
            metrics=_section(MetricsSettings, raw.get("metrics"), "metrics"),
            baseline=_section(BaselineConfig, raw.get("baseline"), "baseline"),
            quality_window_days=int((raw.get("quality") or {}).get("window_days", 30)),
            health=_section(HealthSettings, raw.get("health"), "health"),
            alerts=_section(AlertSettings, alerts_raw, "alerts"),
            volume_tables=_tables(raw.get("volume_tables"), "volume_tables"),
            report_dir=str((raw.get("report") or {}).get("dir", "output")),
        )


def load_config(config_path: Union[str, Path]) -> MonitorConfig:
    """
    Load and validate a YAML config file.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the content is invalid
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path) as f:
        raw = yaml.safe_load(f)

    return MonitorConfig.from_dict(raw)


def _section(cls, raw: Optional[Dict[str, Any]], name: str):
    raw = raw or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config section '{name}' must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ValueError(f"Unknown keys in config section '{name}': {unknown}")
    return cls(**raw)


def _pipelines(raw: Any) -> Dict[str, List[str]]:
    if not isinstance(raw, dict):
        raise ValueError("Config section 'pipelines' must map pipeline names to model lists")
    pipelines = {}
    for name, models in raw.items():
        if models is None:
            models = []
        if not isinstance(models, list) or not all(isinstance(m, str) for m in models):
            raise ValueError(f"pipelines.{name} must be a list of model names")
        pipelines[str(name)] = list(models)
    return pipelines


def _tables(raw: Any, name: str) -> List[WatchedTable]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError(f"Config section '{name}' must be a list")
    tables = []
    for entry in raw:
        if not isinstance(entry, dict) or "name" not in entry or "timestamp_column" not in entry:
            raise ValueError(f"Each entry of '{name}' needs name and timestamp_column")
        tables.append(WatchedTable(
            name=entry["name"],
            timestamp_column=entry["timestamp_column"],
            entity_key=entry.get("entity_key"),
        ))
    return tables
