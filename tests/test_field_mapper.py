"""Tests for the declarative field mapper and mapping config loading."""

import logging

import pytest

from incident_bridge.errors.exceptions import ConfigurationError
from incident_bridge.mapping.mapper import FieldMapper
from incident_bridge.mapping.rules import load_mapping_config

from tests.fakes import FIELD_MAPPINGS, FakeServiceNow, make_incident


def mapper_for(creation: dict, **sections) -> FieldMapper:
    return FieldMapper(load_mapping_config({"incident_creation": creation, **sections}))


@pytest.fixture
def lookups():
    return FakeServiceNow()


# ---------------------------------------------------------------------------
# Config loading
# ---------------------------------------------------------------------------


class TestLoadMappingConfig:
    def test_example_mappings_load(self):
        config = load_mapping_config(FIELD_MAPPINGS)
        assert list(config.incident_creation) == [
            "short_description", "description", "urgency", "caller_id", "u_incident_io_id",
        ]

    def test_unknown_type_is_configuration_error(self):
        with pytest.raises(ConfigurationError) as exc_info:
            load_mapping_config({"incident_creation": {"x": {"source": "incident.name", "type": "javascript"}}})
        assert any("incident_creation.x" in detail for detail in exc_info.value.details)

    def test_reference_lookup_needs_table(self):
        with pytest.raises(ConfigurationError) as exc_info:
            load_mapping_config(
                {"incident_creation": {"group": {"source": "incident.team", "type": "reference_lookup"}}}
            )
        assert any("lookup_table" in detail for detail in exc_info.value.details)

    def test_expression_syntax_is_checked_at_load(self):
        with pytest.raises(ConfigurationError) as exc_info:
            load_mapping_config(
                {"incident_creation": {"x": {"type": "expression", "expression": "incident.name +"}}}
            )
        assert exc_info.value.details[0].startswith("incident_creation.x")

    def test_deeply_nested_expression_is_configuration_error(self):
        with pytest.raises(ConfigurationError) as exc_info:
            load_mapping_config(
                {"incident_creation": {"x": {"type": "expression", "expression": "(" * 500 + "1" + ")" * 500}}}
            )
        assert "nests deeper" in exc_info.value.details[0]

    def test_every_problem_is_reported(self):
        with pytest.raises(ConfigurationError) as exc_info:
            load_mapping_config({
                "incident_creation": {
                    "a": {"type": "text"},
                    "b": {"source": "incident.x", "type": "choice_mapping"},
                },
            })
        assert len(exc_info.value.details) == 2


# ---------------------------------------------------------------------------
# Per-rule algorithm
# ---------------------------------------------------------------------------


class TestApplyMappings:
    async def test_false_condition_skips_rule_and_fallback(self, lookups):
        mapper = mapper_for({
            "category": {
                "source": "incident.name",
                "type": "text",
                "fallback": "general",
                "condition": "incident.severity.name == 'Critical'",
            },
        })
        result = await mapper.map_for_creation({"incident": make_incident()}, lookups)
        assert "category" not in result.fields

    async def test_missing_source_uses_fallback(self, lookups):
        mapper = mapper_for({"description": {"source": "incident.summary", "type": "text", "fallback": "n/a"}})
        result = await mapper.map_for_creation({"incident": make_incident(summary=None)}, lookups)
        assert result.fields["description"] == "n/a"

    async def test_missing_required_source_is_collected(self, lookups):
        mapper = mapper_for({"short_description": {"source": "incident.title", "type": "text", "required": True}})
        result = await mapper.map_for_creation({"incident": make_incident()}, lookups)
        assert result.missing_required == ["short_description"]
        assert not result.ok

    async def test_missing_optional_source_is_omitted(self, lookups):
        mapper = mapper_for({"cmdb_ci": {"source": "incident.service.name", "type": "text"}})
        result = await mapper.map_for_creation({"incident": make_incident()}, lookups)
        assert result.fields == {}
        assert result.errors == []

    async def test_array_index_source_path(self, lookups):
        mapper = mapper_for({"assigned_to": {"source": "incident.roles[1].name", "type": "text"}})
        incident = make_incident(roles=[{"name": "Lead"}, {"name": "Comms"}])
        result = await mapper.map_for_creation({"incident": incident}, lookups)
        assert result.fields["assigned_to"] == "Comms"

    async def test_text_transform_and_truncation(self, lookups, caplog):
        mapper = mapper_for({
            "short_description": {"source": "incident.name", "type": "text", "transform": "uppercase", "max_length": 8},
        })
        with caplog.at_level(logging.WARNING):
            result = await mapper.map_for_creation({"incident": make_incident()}, lookups)
        assert result.fields["short_description"] == "DATABASE"
        assert "truncated" in caplog.text
        assert result.errors == []

    async def test_empty_string_is_skipped(self, lookups):
        mapper = mapper_for({"description": {"source": "incident.summary", "type": "text"}})
        result = await mapper.map_for_creation({"incident": make_incident(summary="")}, lookups)
        assert "description" not in result.fields

    async def test_empty_string_kept_when_not_skipping(self, lookups):
        mapper = mapper_for({
            "work_notes": {"source": "incident.summary", "type": "text", "skip_empty_strings": False},
        })
        result = await mapper.map_for_creation({"incident": make_incident(summary="")}, lookups)
        assert result.fields["work_notes"] == ""

    async def test_user_lookup_resolves_sys_id(self, lookups):
        mapper = mapper_for({
            "caller_id": {"source": "incident.creator.user.email", "type": "user_lookup", "lookup_field": "email"},
        })
        result = await mapper.map_for_creation({"incident": make_incident()}, lookups)
        assert result.fields["caller_id"] == "usr_oncall"
        assert lookups.lookups == [("sys_user", "email", "oncall@example.com")]

    async def test_reference_lookup_miss_is_soft(self, lookups, caplog):
        mapper = mapper_for({
            "assignment_group": {
                "source": "incident.team",
                "type": "reference_lookup",
                "lookup_table": "sys_user_group",
            },
        })
        with caplog.at_level(logging.WARNING):
            result = await mapper.map_for_creation({"incident": make_incident(team="Payments")}, lookups)
        assert "assignment_group" not in result.fields
        assert result.ok
        assert "Reference lookup found no match" in caplog.text

    async def test_expression_failure_is_field_level(self, lookups):
        mapper = mapper_for({
            "u_ratio": {"type": "expression", "expression": "1 / 0"},
            "short_description": {"source": "incident.name", "type": "text"},
        })
        result = await mapper.map_for_creation({"incident": make_incident()}, lookups)
        assert "u_ratio" not in result.fields
        assert result.fields["short_description"] == "Database latency spike"
        assert any("u_ratio" in error for error in result.errors)

    @pytest.mark.parametrize(
        "expression",
        ["int(float('inf'))", "+".join(["1"] * 1500)],
    )
    async def test_runaway_expression_is_field_level(self, lookups, expression):
        mapper = mapper_for({
            "u_score": {"type": "expression", "expression": expression},
            "short_description": {"source": "incident.name", "type": "text"},
        })
        result = await mapper.map_for_creation({"incident": make_incident()}, lookups)
        assert "u_score" not in result.fields
        assert result.fields["short_description"] == "Database latency spike"
        assert any("u_score" in error for error in result.errors)

    async def test_failing_condition_skips_rule(self, lookups):
        mapper = mapper_for({
            "u_flag": {
                "source": "incident.name",
                "type": "text",
                "condition": "int(float('inf')) > 0",
            },
        })
        result = await mapper.map_for_creation({"incident": make_incident()}, lookups)
        assert "u_flag" not in result.fields
        assert result.ok

    async def test_expression_sees_value(self, lookups):
        mapper = mapper_for({
            "short_description": {
                "source": "incident.name",
                "type": "expression",
                "expression": "concat('[', incident.severity.name, '] ', value)",
            },
        })
        result = await mapper.map_for_creation({"incident": make_incident()}, lookups)
        assert result.fields["short_description"] == "[Major] Database latency spike"

    async def test_conditional_first_match_wins(self, lookups):
        rule = {
            "type": "conditional",
            "conditions": [
                {"if": "incident.severity.name == 'Critical'", "then": "1"},
                {"if": "incident.severity.name in ['Critical', 'Major']", "then": "2"},
            ],
            "else": "4",
        }
        mapper = mapper_for({"priority": rule})
        major = await mapper.map_for_creation({"incident": make_incident()}, lookups)
        minor = await mapper.map_for_creation(
            {"incident": make_incident(severity={"name": "Minor"})}, lookups
        )
        assert major.fields["priority"] == "2"
        assert minor.fields["priority"] == "4"


class TestChoiceMapping:
    RULE = {
        "source": "incident.severity.name",
        "type": "choice_mapping",
        "mappings": {"Critical": "1", "Major": "2", "major": "9"},
    }

    async def map_severity(self, lookups, severity, **overrides):
        mapper = mapper_for({"urgency": {**self.RULE, **overrides}})
        result = await mapper.map_for_creation(
            {"incident": make_incident(severity={"name": severity})}, lookups
        )
        return result.fields.get("urgency")

    async def test_exact_match_first(self, lookups):
        assert await self.map_severity(lookups, "major") == "9"

    async def test_case_insensitive_match(self, lookups):
        assert await self.map_severity(lookups, "CRITICAL") == "1"

    async def test_no_match_uses_fallback(self, lookups):
        assert await self.map_severity(lookups, "Minor", fallback="3") == "3"

    async def test_no_match_without_fallback_is_null(self, lookups):
        assert await self.map_severity(lookups, "Minor") is None

    async def test_non_strict_miss_is_not_logged(self, lookups, caplog):
        with caplog.at_level(logging.WARNING):
            await self.map_severity(lookups, "Minor", strict=False)
        assert "No mapping found" not in caplog.text


class TestCustomMappingsAndValidation:
    async def test_custom_mapping_reads_mapped_fields(self, lookups):
        mapper = mapper_for(
            {"short_description": {"source": "incident.name", "type": "text"}},
            custom_mappings={
                "u_headline": {
                    "expression": "upper(short_description)",
                    "depends_on": ["short_description"],
                },
            },
        )
        result = await mapper.map_for_creation({"incident": make_incident()}, lookups)
        assert result.fields["u_headline"] == "DATABASE LATENCY SPIKE"

    async def test_custom_mapping_skipped_without_dependency(self, lookups):
        mapper = mapper_for(
            {"short_description": {"source": "incident.name", "type": "text"}},
            custom_mappings={"u_owner": {"expression": "caller_id", "depends_on": ["caller_id"]}},
        )
        result = await mapper.map_for_creation({"incident": make_incident()}, lookups)
        assert "u_owner" not in result.fields
        assert result.errors == []

    async def test_global_rules_are_collected_not_raised(self, lookups):
        mapper = mapper_for(
            {"short_description": {"source": "incident.name", "type": "text"}},
            validation_rules={
                "required_fields_creation": ["short_description", "caller_id"],
                "max_field_lengths": {"short_description": 5},
            },
        )
        result = await mapper.map_for_creation({"incident": make_incident()}, lookups)
        assert result.missing_required == ["caller_id"]
        assert len(result.errors) == 2

    def test_mapping_summary(self):
        mapper = FieldMapper(load_mapping_config(FIELD_MAPPINGS))
        summary = mapper.get_mapping_config()
        assert summary["update_fields"] == ["short_description", "urgency", "work_notes"]
        assert mapper.validate_configuration() == {"valid": True, "errors": []}
