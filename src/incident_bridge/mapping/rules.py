"""Declarative field mapping configuration models.

A mapping file has four sections::

    incident_creation:   {destination_field: MappingRule, ...}
    incident_updates:    {destination_field: MappingRule, ...}
    custom_mappings:     {destination_field: CustomMapping, ...}
    validation_rules:    ValidationRules

Every rule is validated when the file is loaded. An unknown ``type`` or a rule
missing the attributes its type needs is a ``ConfigurationError`` at startup,
never a per-record failure.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from incident_bridge.errors.exceptions import ConfigurationError
from incident_bridge.mapping.expressions import ExpressionSyntaxError, parse_expression
from incident_bridge.models.enums import MappingType, TextTransform

# Types that compute their value and therefore do not need a source path.
_SOURCELESS_TYPES = {MappingType.EXPRESSION, MappingType.CONDITIONAL}


class ConditionalBranch(BaseModel):
    """One ``if``/``then`` pair of a conditional rule."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    if_: str = Field(alias="if")
    then: Any = None


class MappingRule(BaseModel):
    """A single destination field's mapping rule."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    type: MappingType
    source: str | None = None
    required: bool = False
    fallback: Any = None
    max_length: int | None = Field(None, gt=0)
    condition: str | None = None
    description: str | None = None

    # text
    transform: TextTransform | None = None
    skip_empty_strings: bool = True

    # user_lookup / reference_lookup
    lookup_field: str = "name"
    lookup_table: str | None = None

    # choice_mapping
    mappings: dict[str, Any] | None = None
    strict: bool = True

    # expression
    expression: str | None = None

    # conditional
    conditions: list[ConditionalBranch] | None = None
    else_: Any = Field(None, alias="else")

    @model_validator(mode="after")
    def _check_type_requirements(self) -> MappingRule:
        if not self.source and self.type not in _SOURCELESS_TYPES:
            raise ValueError(f"source is required for type {self.type}")
        if self.type == MappingType.REFERENCE_LOOKUP and not self.lookup_table:
            raise ValueError("lookup_table is required for reference_lookup")
        if self.type == MappingType.CHOICE_MAPPING and self.mappings is None:
            raise ValueError("mappings object is required for choice_mapping")
        if self.type == MappingType.EXPRESSION and not self.expression:
            raise ValueError("expression is required for expression type")
        if self.type == MappingType.CONDITIONAL and not self.conditions:
            raise ValueError("conditions array is required for conditional type")
        return self

    def expressions(self) -> list[str]:
        """All expression strings this rule will evaluate."""
        found = []
        if self.condition:
            found.append(self.condition)
        if self.expression:
            found.append(self.expression)
        for branch in self.conditions or []:
            found.append(branch.if_)
        return found


class CustomMapping(BaseModel):
    """Derived field computed from the already-mapped destination record."""

    model_config = ConfigDict(extra="forbid")

    expression: str
    depends_on: list[str] = Field(default_factory=list)
    description: str | None = None


class ValidationRules(BaseModel):
    """Global checks run over the final destination record."""

    model_config = ConfigDict(extra="forbid")

    required_fields_creation: list[str] = Field(default_factory=list)
    required_fields_update: list[str] = Field(default_factory=list)
    max_field_lengths: dict[str, int] = Field(default_factory=dict)


class MappingConfig(BaseModel):
    """Complete field mapping configuration."""

    model_config = ConfigDict(extra="forbid")

    incident_creation: dict[str, MappingRule] = Field(default_factory=dict)
    incident_updates: dict[str, MappingRule] = Field(default_factory=dict)
    custom_mappings: dict[str, CustomMapping] = Field(default_factory=dict)
    validation_rules: ValidationRules = Field(default_factory=ValidationRules)


def _format_location(loc: tuple) -> str:
    return ".".join(str(part) for part in loc)


def collect_expression_errors(config: MappingConfig) -> list[str]:
    """Parse every expression in the config and report syntax errors."""
    errors: list[str] = []
    sections = (("incident_creation", config.incident_creation), ("incident_updates", config.incident_updates))
    for section, rules in sections:
        for field_name, rule in rules.items():
            for source in rule.expressions():
                try:
                    parse_expression(source)
                except ExpressionSyntaxError as exc:
                    errors.append(f"{section}.{field_name}: {exc}")
    for field_name, custom in config.custom_mappings.items():
        try:
            parse_expression(custom.expression)
        except ExpressionSyntaxError as exc:
            errors.append(f"custom_mappings.{field_name}: {exc}")
    return errors


def load_mapping_config(data: dict | None) -> MappingConfig:
    """Validate raw mapping data into a ``MappingConfig``.

    Raises:
        ConfigurationError: listing every invalid rule and expression.
    """
    try:
        config = MappingConfig.model_validate(data or {})
    except ValidationError as exc:
        errors = [f"{_format_location(err['loc'])}: {err['msg']}" for err in exc.errors()]
        raise ConfigurationError("Field mapping configuration is invalid", details=errors) from exc

    errors = collect_expression_errors(config)
    if errors:
        raise ConfigurationError("Field mapping configuration is invalid", details=errors)
    return config
