"""Collection configuration: YAML file + environment + command-line flags.

Precedence, highest first: flags, environment, file, built-in defaults.
The merged document is validated against ``schemas/collect.schema.json``.
"""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from functools import cache
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft7Validator, FormatChecker

from diag_collector.capture import DEFAULT_FIND_MAX_DEPTH
from diag_collector.exceptions import ConfigValidationError, YamlParseError
from diag_collector.fleet import CollectionArgs
from diag_collector.gclog import DEFAULT_PROCESS_SUFFIX
from diag_collector.job_profiles import DEFAULT_THREADS
from diag_collector.secrets import SecretStr

ENV_ACCESS_TOKEN = "DIAG_COLLECTOR_ACCESS_TOKEN"
COLLECT_SCHEMA = "collect"
MAX_REPORTED_ERRORS = 10


@dataclass(frozen=True)
class JobProfilesConfig:
    total: int = 0
    slow_exec: int | None = None
    slow_planning: int | None = None
    high_cost: int | None = None
    recent_errors: int | None = None
    threads: int = DEFAULT_THREADS
    endpoint: str = "http://localhost:9047"
    queries_dir: str = ""
    output_dir: str = "job_profiles"


@dataclass(frozen=True)
class CollectConfig:
    coordinator: str = ""
    executors: str = ""
    output: str = "diag.tgz"
    conf_dir: str = "/opt/dremio/conf"
    log_dir: str = "/var/log/dremio"
    gc_log_override: str = ""
    log_age_days: int = 0
    exclude_files: tuple[str, ...] = ()
    copy_strategy: str = "default"
    find_max_depth: int = DEFAULT_FIND_MAX_DEPTH
    size_limit_bytes: int = 0
    process_suffix: str = DEFAULT_PROCESS_SUFFIX
    access_token: SecretStr = field(default_factory=lambda: SecretStr(""))
    job_profiles: JobProfilesConfig = field(default_factory=JobProfilesConfig)

    def to_collection_args(self, *, work_dir: Path | None = None) -> CollectionArgs:
        return CollectionArgs(
            coordinator=self.coordinator,
            executors=self.executors,
            output=Path(self.output),
            conf_dir=self.conf_dir,
            log_dir=self.log_dir,
            gc_log_override=self.gc_log_override,
            log_age_days=self.log_age_days,
            exclude_files=self.exclude_files,
            copy_strategy=self.copy_strategy,
            find_max_depth=self.find_max_depth,
            size_limit_bytes=self.size_limit_bytes,
            process_suffix=self.process_suffix,
            work_dir=work_dir,
        )


@cache
def load_schema(schema_name: str) -> dict[str, Any]:
    schema_path = resources.files("diag_collector").joinpath("schemas", f"{schema_name}.schema.json")
    return json.loads(schema_path.read_text(encoding="utf-8"))


def validate_config(config: Any, schema_name: str, *, config_path: Path | None = None) -> None:
    schema = load_schema(schema_name)
    validator = Draft7Validator(schema, format_checker=FormatChecker())
    errors = sorted(validator.iter_errors(config), key=lambda exc: list(exc.path))
    if not errors:
        return
    location = str(config_path) if config_path else "<config>"
    lines = [f"Schema validation failed for {location} ({schema_name})."]
    error_details: list[dict[str, str]] = []
    for error in errors[:MAX_REPORTED_ERRORS]:
        path = ".".join(str(p) for p in error.path) if error.path else "<root>"
        lines.append(f"- {path}: {error.message}")
        error_details.append({"path": path, "message": error.message})
    if len(errors) > MAX_REPORTED_ERRORS:
        lines.append(f"... and {len(errors) - MAX_REPORTED_ERRORS} more errors.")
    raise ConfigValidationError(
        "\n".join(lines),
        context={
            "path": location,
            "schema": schema_name,
            "errors": error_details,
            "truncated": len(errors) > MAX_REPORTED_ERRORS,
        },
    )


def read_yaml(path: Path) -> dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise YamlParseError(
            f"YAML parse error in {path}: {exc}",
            context={"path": str(path), "error": str(exc)},
        ) from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigValidationError(
            f"{path} must contain a mapping at the top level",
            context={"path": str(path)},
        )
    return data


def _merge(base: dict[str, Any], overrides: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if value is None:
            continue
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _merge(dict(merged[key]), value)
        elif isinstance(value, Mapping):
            merged[key] = _merge({}, value)
        else:
            merged[key] = value
    return merged


def load_config(
    path: Path | None = None,
    *,
    overrides: Mapping[str, Any] | None = None,
    env: Mapping[str, str] | None = None,
) -> CollectConfig:
    """Build a :class:`CollectConfig`; ``None`` values in ``overrides`` mean "not given"."""
    environ = os.environ if env is None else env
    data = read_yaml(path) if path is not None else {}
    token = environ.get(ENV_ACCESS_TOKEN)
    if token:
        data["access_token"] = token
    data = _merge(data, overrides or {})
    validate_config(data, COLLECT_SCHEMA, config_path=path)

    jp = JobProfilesConfig(**data.pop("job_profiles", {}))
    if "exclude_files" in data:
        data["exclude_files"] = tuple(data["exclude_files"])
    data["access_token"] = SecretStr(data.get("access_token", ""))
    return CollectConfig(job_profiles=jp, **data)
