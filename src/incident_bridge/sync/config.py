"""Structured integration config: platforms, features, loop guard and mappings.

Loaded from ``config.yaml`` and ``field-mappings.yaml`` in the config
directory, falling back to the ``*.example.yaml`` copies shipped with the
repository. JSON files are accepted too since JSON is a YAML subset.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from incident_bridge.errors.exceptions import ConfigurationError
from incident_bridge.mapping.rules import MappingConfig, load_mapping_config

logger = logging.getLogger(__name__)

REQUIRED_ENV_VARS = frozenset({
    "INCIDENT_IO_API_KEY",
    "SERVICENOW_USERNAME",
    "SERVICENOW_PASSWORD",
    "WEBHOOK_SECRET",
})

_PLACEHOLDER_RE = re.compile(r"^\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)\}$")


class ServiceNowConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    instance_url: str = ""
    username: str = ""
    password: str = ""
    table: str = "incident"
    incident_io_id_field: str = "u_incident_io_id"
    timeout: float = Field(30.0, gt=0)
    retry_attempts: int = Field(3, ge=0)
    retry_delay: float = Field(1.0, ge=0)
    cache_ttl_seconds: float = Field(300.0, gt=0)


class IncidentIOConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    api_url: str = "https://api.incident.io/v2"
    api_key: str = ""
    timeout: float = Field(30.0, gt=0)
    retry_attempts: int = Field(3, ge=0)
    retry_delay: float = Field(1.0, ge=0)
    servicenow_link_field_id: str | None = None


class WebhookConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str = "/webhook"
    verify_signature: bool = False
    secret: str | None = None


class ServiceNowWebhookConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    verify_signature: bool = False
    secret: str | None = None


class FeatureFlags(BaseModel):
    model_config = ConfigDict(extra="forbid")

    create_incidents: bool = True
    update_incidents: bool = True
    deduplicate_work_notes: bool = True
    add_servicenow_link: bool = False
    sync_status: bool = False
    sync_severity: bool = False
    enable_manual_sync_endpoints: bool = False


class PerformanceConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    batch_size: int = Field(10, gt=0)
    concurrent_requests: int = Field(5, gt=0)
    requests_per_minute: int = Field(60, gt=0)


class LoopGuardConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    cooldown_seconds: float = Field(30.0, gt=0)
    retention_seconds: float = Field(300.0, gt=0)


class ReverseMappings(BaseModel):
    """ServiceNow ordinal → incident.io id tables used by reverse sync.

    ``allowed_statuses`` lists the incident.io status ids that the incident
    workflow permits an API caller to move to. Every ``status`` target must
    be one of them.
    """

    model_config = ConfigDict(extra="forbid")

    status: dict[str, str] = Field(default_factory=dict)
    allowed_statuses: list[str] = Field(default_factory=list)
    severity: dict[str, str] = Field(default_factory=dict)


class BridgeConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    servicenow: ServiceNowConfig = Field(default_factory=ServiceNowConfig)
    incident_io: IncidentIOConfig = Field(default_factory=IncidentIOConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    servicenow_webhook: ServiceNowWebhookConfig = Field(default_factory=ServiceNowWebhookConfig)
    features: FeatureFlags = Field(default_factory=FeatureFlags)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)
    loop_guard: LoopGuardConfig = Field(default_factory=LoopGuardConfig)
    reverse_mappings: ReverseMappings = Field(default_factory=ReverseMappings)
    field_mappings: MappingConfig = Field(default_factory=MappingConfig)

    def summary(self) -> dict:
        """Non-secret overview, suitable for logs and the CLI."""
        return {
            "servicenow_instance": self.servicenow.instance_url,
            "servicenow_table": self.servicenow.table,
            "incident_io_api": self.incident_io.api_url,
            "webhook_path": self.webhook.path,
            "features": self.features.model_dump(),
            "performance": self.performance.model_dump(),
            "loop_guard": self.loop_guard.model_dump(),
            "creation_fields": list(self.field_mappings.incident_creation),
            "update_fields": list(self.field_mappings.incident_updates),
        }


def substitute_env_vars(data: Any, environ: dict[str, str] | None = None) -> Any:
    """Replace whole-string ``${VAR}`` values with environment values.

    Unset optional variables keep their placeholder text. Unset required
    variables raise ``ConfigurationError``.
    """
    env = os.environ if environ is None else environ
    missing: list[str] = []

    def _walk(value: Any) -> Any:
        if isinstance(value, dict):
            return {key: _walk(item) for key, item in value.items()}
        if isinstance(value, list):
            return [_walk(item) for item in value]
        if isinstance(value, str):
            match = _PLACEHOLDER_RE.match(value)
            if match:
                name = match["name"]
                resolved = env.get(name)
                if resolved:
                    return resolved
                if name in REQUIRED_ENV_VARS:
                    missing.append(name)
        return value

    result = _walk(data)
    if missing:
        raise ConfigurationError(
            "Required environment variables are not set",
            details=[f"Required environment variable {name} is not set" for name in sorted(set(missing))],
        )
    return result


def _read_first(config_dir: Path, names: tuple[str, ...]) -> tuple[dict, Path]:
    for name in names:
        path = config_dir / name
        if not path.is_file():
            continue
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Failed to parse {path}", details=[str(exc)]) from exc
        if data is not None and not isinstance(data, dict):
            raise ConfigurationError(f"{path} must contain a mapping at the top level")
        logger.info("Loaded configuration from %s", path)
        return data or {}, path
    raise ConfigurationError(
        f"No configuration file found in {config_dir}",
        details=[f"Expected one of: {', '.join(names)}"],
    )


def validate_bridge_config(config: BridgeConfig) -> list[str]:
    """Cross-field checks that a single model cannot express."""
    errors: list[str] = []

    if not config.servicenow.instance_url:
        errors.append("ServiceNow instance_url is required")
    if not config.servicenow.username:
        errors.append("ServiceNow username is required")
    if not config.servicenow.password:
        errors.append("ServiceNow password is required")
    if not config.incident_io.api_key:
        errors.append("Incident.io API key is required")
    if config.webhook.verify_signature and not config.webhook.secret:
        errors.append("Webhook secret is required when signature verification is enabled")
    if config.servicenow_webhook.verify_signature and not config.servicenow_webhook.secret:
        errors.append("ServiceNow webhook secret is required when signature verification is enabled")
    if not config.webhook.path.startswith("/"):
        errors.append("Webhook path must start with '/'")

    reverse = config.reverse_mappings
    if config.features.sync_status:
        if not reverse.status:
            errors.append("reverse_mappings.status is required when sync_status is enabled")
        if not reverse.allowed_statuses:
            errors.append("reverse_mappings.allowed_statuses is required when sync_status is enabled")
    if reverse.allowed_statuses:
        allowed = set(reverse.allowed_statuses)
        for state, status_id in reverse.status.items():
            if status_id not in allowed:
                errors.append(
                    f"reverse_mappings.status.{state}: {status_id} is not one of the allowed statuses"
                )
    if config.features.sync_severity and not reverse.severity:
        errors.append("reverse_mappings.severity is required when sync_severity is enabled")

    return errors


def build_bridge_config(
    raw: dict,
    field_mappings: dict | None = None,
    environ: dict[str, str] | None = None,
) -> BridgeConfig:
    """Validate raw config data into a ``BridgeConfig``.

    Raises:
        ConfigurationError: listing every problem found.
    """
    raw = substitute_env_vars(raw or {}, environ)
    errors: list[str] = []

    mappings = MappingConfig()
    try:
        mappings = load_mapping_config(field_mappings)
    except ConfigurationError as exc:
        errors.extend(exc.details or [exc.message])

    try:
        config = BridgeConfig.model_validate({**raw, "field_mappings": mappings})
    except ValidationError as exc:
        errors.extend(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ConfigurationError("Configuration validation failed", details=errors) from exc

    errors.extend(validate_bridge_config(config))
    if errors:
        raise ConfigurationError("Configuration validation failed", details=errors)
    return config


def load_bridge_config(config_dir: str | Path, environ: dict[str, str] | None = None) -> BridgeConfig:
    """Load and validate ``config.yaml`` plus ``field-mappings.yaml``."""
    directory = Path(config_dir)
    raw, _ = _read_first(
        directory,
        ("config.yaml", "config.yml", "config.json", "config.example.yaml"),
    )
    mappings, _ = _read_first(
        directory,
        ("field-mappings.yaml", "field-mappings.yml", "field-mappings.json", "field-mappings.example.yaml"),
    )
    config = build_bridge_config(raw, mappings, environ)
    logger.info("Configuration loaded successfully", extra={"summary": config.summary()})
    return config
