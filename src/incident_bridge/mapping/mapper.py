"""FieldMapper: interprets a MappingConfig to build destination records."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from incident_bridge.errors.exceptions import BridgeError
from incident_bridge.mapping.expressions import (
    DEFAULT_TIMEOUT_SECONDS,
    ExpressionError,
    evaluate,
    title_case,
)
from incident_bridge.mapping.rules import MappingConfig, MappingRule, collect_expression_errors
from incident_bridge.models.enums import MappingType, TextTransform

logger = logging.getLogger(__name__)

_ARRAY_KEY_RE = re.compile(r"^(?P<key>.+)\[(?P<index>\d+)\]$")


class LookupService(Protocol):
    """Cached name → internal-id lookups offered by the destination platform."""

    async def lookup_user(self, value: str, lookup_field: str = "name") -> str | None: ...

    async def lookup_reference(self, table: str, value: str, lookup_field: str = "name") -> str | None: ...


@dataclass
class MappingResult:
    """Output of one mapping pass.

    ``errors`` holds every soft, field-level problem. ``missing_required`` is
    the subset that should abort the sync using this result.
    """

    fields: dict[str, Any] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    missing_required: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.missing_required


class FieldMapper:
    """Transforms normalised incident.io data into ServiceNow fields."""

    def __init__(self, config: MappingConfig, expression_timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self.config = config
        self.expression_timeout = expression_timeout

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def map_for_creation(self, source: dict, lookups: LookupService) -> MappingResult:
        """Map a source record with the ``incident_creation`` rules."""
        logger.debug("Mapping fields for incident creation", extra={"incident_id": _incident_id(source)})
        if not self.config.incident_creation:
            logger.warning("No creation mappings configured")
        result = await self.apply_mappings(self.config.incident_creation, source, lookups)
        self.validate_result(result, self.config.validation_rules.required_fields_creation)
        return result

    async def map_for_update(
        self,
        source: dict,
        lookups: LookupService,
        existing_record: dict | None = None,
    ) -> MappingResult:
        """Map a source record with the ``incident_updates`` rules."""
        logger.debug(
            "Mapping fields for incident update",
            extra={
                "incident_id": _incident_id(source),
                "servicenow_sys_id": (existing_record or {}).get("sys_id"),
            },
        )
        if not self.config.incident_updates:
            logger.warning("No update mappings configured")
        result = await self.apply_mappings(self.config.incident_updates, source, lookups)
        self.validate_result(result, self.config.validation_rules.required_fields_update)
        return result

    async def apply_mappings(
        self,
        rules: dict[str, MappingRule],
        source: dict,
        lookups: LookupService,
    ) -> MappingResult:
        """Apply each rule in order, then the custom (derived) mappings."""
        result = MappingResult()

        for field_name, rule in rules.items():
            if rule.condition and not self.evaluate_condition(rule.condition, source):
                logger.debug("Skipping field %s - condition not met", field_name)
                continue

            if rule.source:
                value = self.get_source_value(rule.source, source)
                if value == "" and rule.skip_empty_strings:
                    value = None
                if value is None:
                    self._apply_missing(result, field_name, rule, "has no source value")
                    continue
            else:
                value = None

            try:
                mapped = await self.apply_field_mapping(field_name, rule, value, lookups, source)
            except (ExpressionError, BridgeError) as exc:
                logger.error("Failed to map field %s: %s", field_name, exc)
                result.errors.append(f"Field {field_name}: {exc}")
                mapped = None

            if mapped is None:
                self._apply_missing(result, field_name, rule, "mapped to no value")
                continue

            result.fields[field_name] = self._truncate(field_name, mapped, rule.max_length)

        if self.config.custom_mappings:
            self.apply_custom_mappings(result, source)

        logger.debug(
            "Field mapping completed",
            extra={"mapped_fields": list(result.fields), "error_count": len(result.errors)},
        )
        return result

    # ------------------------------------------------------------------
    # Per-type mapping
    # ------------------------------------------------------------------

    async def apply_field_mapping(
        self,
        field_name: str,
        rule: MappingRule,
        value: Any,
        lookups: LookupService,
        source: dict,
    ) -> Any:
        """Dispatch a single value to the handler for the rule's type."""
        if rule.type == MappingType.TEXT:
            return self.map_text_field(value, rule)
        if rule.type == MappingType.USER_LOOKUP:
            return await self.map_user_lookup(field_name, value, rule, lookups)
        if rule.type == MappingType.REFERENCE_LOOKUP:
            return await self.map_reference_lookup(field_name, value, rule, lookups)
        if rule.type == MappingType.CHOICE_MAPPING:
            return self.map_choice_field(field_name, value, rule)
        if rule.type == MappingType.EXPRESSION:
            return self.map_expression_field(value, rule, source)
        if rule.type == MappingType.CONDITIONAL:
            return self.map_conditional_field(rule, source)
        # MappingRule validation makes this unreachable for loaded configs.
        raise ValueError(f"Unknown mapping type: {rule.type}")

    def map_text_field(self, value: Any, rule: MappingRule) -> str | None:
        text = value if isinstance(value, str) else str(value)
        if text == "" and rule.skip_empty_strings:
            return None
        if rule.transform == TextTransform.UPPERCASE:
            return text.upper()
        if rule.transform == TextTransform.LOWERCASE:
            return text.lower()
        if rule.transform == TextTransform.TITLE:
            return title_case(text)
        return text

    async def map_user_lookup(
        self, field_name: str, value: Any, rule: MappingRule, lookups: LookupService
    ) -> str | None:
        sys_id = await lookups.lookup_user(str(value), rule.lookup_field)
        if sys_id is None:
            logger.warning(
                "User lookup found no match for %s",
                field_name,
                extra={"value": value, "lookup_field": rule.lookup_field},
            )
        return sys_id

    async def map_reference_lookup(
        self, field_name: str, value: Any, rule: MappingRule, lookups: LookupService
    ) -> str | None:
        sys_id = await lookups.lookup_reference(rule.lookup_table, str(value), rule.lookup_field)
        if sys_id is None:
            logger.warning(
                "Reference lookup found no match for %s",
                field_name,
                extra={"value": value, "table": rule.lookup_table, "lookup_field": rule.lookup_field},
            )
        return sys_id

    def map_choice_field(self, field_name: str, value: Any, rule: MappingRule) -> Any:
        """Exact match first, then case-insensitive, then the rule's fallback."""
        choices = rule.mappings or {}
        key = value if isinstance(value, str) else str(value)

        if key in choices:
            return choices[key]

        folded = key.casefold()
        for choice_key, mapped in choices.items():
            if choice_key.casefold() == folded:
                return mapped

        if rule.strict:
            logger.warning(
                "No mapping found for choice value of %s",
                field_name,
                extra={"value": key, "available_mappings": list(choices)},
            )
        return rule.fallback

    def map_expression_field(self, value: Any, rule: MappingRule, source: dict) -> Any:
        context = {"value": value, "incident": source.get("incident") or {}, "data": source}
        result = evaluate(rule.expression, context, timeout=self.expression_timeout)
        logger.debug("Expression evaluated", extra={"expression": rule.expression, "result": result})
        return result

    def map_conditional_field(self, rule: MappingRule, source: dict) -> Any:
        for branch in rule.conditions or []:
            if self.evaluate_condition(branch.if_, source):
                return branch.then
        if rule.else_ is not None:
            return rule.else_
        return rule.fallback

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def get_source_value(source_path: str | None, data: Any) -> Any:
        """Resolve a dot path such as ``incident.roles[0].assignee.name``.

        Any missing intermediate key yields ``None``.
        """
        if not source_path:
            return None

        value = data
        for key in source_path.split("."):
            match = _ARRAY_KEY_RE.match(key)
            if match:
                value = value.get(match["key"]) if isinstance(value, dict) else None
                index = int(match["index"])
                value = value[index] if isinstance(value, list) and index < len(value) else None
            else:
                value = value.get(key) if isinstance(value, dict) else None
            if value is None:
                return None
        return value

    def evaluate_condition(self, condition: str | None, data: dict) -> bool:
        """Evaluate a guard expression; evaluation failures count as false."""
        if not condition:
            return True
        context = {"incident": data.get("incident") or {}, "data": data}
        try:
            return bool(evaluate(condition, context, timeout=self.expression_timeout))
        except ExpressionError as exc:
            logger.warning("Condition evaluation failed", extra={"condition": condition, "error": str(exc)})
            return False

    def apply_custom_mappings(self, result: MappingResult, source: dict) -> None:
        """Compute derived fields from the already-mapped destination record."""
        for field_name, custom in self.config.custom_mappings.items():
            missing = [dep for dep in custom.depends_on if dep not in result.fields]
            if missing:
                logger.debug(
                    "Skipping custom mapping %s - missing dependencies",
                    field_name,
                    extra={"missing": missing},
                )
                continue

            context = {**result.fields, "incident": source.get("incident") or {}, "data": source}
            try:
                value = evaluate(custom.expression, context, timeout=self.expression_timeout)
            except ExpressionError as exc:
                logger.error("Failed to apply custom mapping %s: %s", field_name, exc)
                result.errors.append(f"Custom field {field_name}: {exc}")
                continue
            if value is not None:
                result.fields[field_name] = value

    def validate_result(self, result: MappingResult, required_fields: list[str]) -> None:
        """Collect global required-field and max-length violations."""
        for field_name in required_fields:
            if result.fields.get(field_name) in (None, ""):
                result.errors.append(f"Required field {field_name} is missing or empty")
                if field_name not in result.missing_required:
                    result.missing_required.append(field_name)

        for field_name, max_length in self.config.validation_rules.max_field_lengths.items():
            value = result.fields.get(field_name)
            if isinstance(value, str) and len(value) > max_length:
                logger.warning(
                    "Field %s exceeds maximum length",
                    field_name,
                    extra={"current_length": len(value), "max_length": max_length},
                )
                result.errors.append(f"Field {field_name} exceeds maximum length of {max_length}")

        if result.errors:
            logger.warning("Field mapping completed with errors", extra={"errors": result.errors})

    def _apply_missing(self, result: MappingResult, field_name: str, rule: MappingRule, reason: str) -> None:
        if rule.fallback is not None:
            result.fields[field_name] = rule.fallback
        elif rule.required:
            result.errors.append(f"Required field {field_name} {reason}")
            result.missing_required.append(field_name)

    @staticmethod
    def _truncate(field_name: str, value: Any, max_length: int | None) -> Any:
        if max_length and isinstance(value, str) and len(value) > max_length:
            logger.warning(
                "Field %s truncated from %d to %d characters", field_name, len(value), max_length
            )
            return value[:max_length]
        return value

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_mapping_config(self) -> dict:
        return {
            "creation_fields": list(self.config.incident_creation),
            "update_fields": list(self.config.incident_updates),
            "custom_fields": list(self.config.custom_mappings),
            "validation_rules": self.config.validation_rules.model_dump(),
        }

    def validate_configuration(self) -> dict:
        """Re-check the loaded configuration (used by readiness checks)."""
        errors = collect_expression_errors(self.config)
        return {"valid": not errors, "errors": errors}


def _incident_id(source: dict) -> str | None:
    incident = source.get("incident") if isinstance(source, dict) else None
    return incident.get("id") if isinstance(incident, dict) else None
