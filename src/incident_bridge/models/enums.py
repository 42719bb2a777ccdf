"""String enums shared across the bridge."""

from enum import StrEnum


class MappingType(StrEnum):
    TEXT = "text"
    USER_LOOKUP = "user_lookup"
    REFERENCE_LOOKUP = "reference_lookup"
    CHOICE_MAPPING = "choice_mapping"
    EXPRESSION = "expression"
    CONDITIONAL = "conditional"


class TextTransform(StrEnum):
    UPPERCASE = "uppercase"
    LOWERCASE = "lowercase"
    TITLE = "title"


class IncidentEventType(StrEnum):
    CREATED = "public_incident.incident_created_v2"
    UPDATED = "public_incident.incident_updated_v2"
    STATUS_UPDATED = "public_incident.incident_status_updated_v2"


class SyncDirection(StrEnum):
    FORWARD = "forward"
    REVERSE = "reverse"


class SyncAction(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    SUPPRESSED = "suppressed"
    DUPLICATE = "duplicate"
    NOOP = "noop"
