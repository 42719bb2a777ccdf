"""Custom exception classes for the sync bridge."""


class BridgeError(Exception):
    """Base exception for the sync bridge."""

    def __init__(self, code: str, message: str, details=None, status_code: int = 500):
        self.code = code
        self.message = message
        self.details = details
        self.status_code = status_code
        super().__init__(message)


class ConfigurationError(BridgeError):
    """Invalid or incomplete configuration. Fatal at load time."""

    def __init__(self, message: str, details=None):
        super().__init__("CONFIGURATION_ERROR", message, details, status_code=500)


class MappingValidationError(BridgeError):
    """Mapped record is missing fields the destination requires."""

    def __init__(self, operation: str, missing_fields: list[str]):
        self.operation = operation
        self.missing_fields = missing_fields
        super().__init__(
            "MAPPING_VALIDATION_ERROR",
            f"Missing required fields for {operation}: {', '.join(missing_fields)}",
            {"operation": operation, "missing_fields": missing_fields},
            status_code=422,
        )


class PlatformError(BridgeError):
    """A call to incident.io or ServiceNow failed (after retries, if retryable)."""

    def __init__(self, platform: str, message: str, http_status: int | None = None, details=None):
        self.platform = platform
        self.http_status = http_status
        super().__init__(
            "UPSTREAM_ERROR",
            f"{platform}: {message}",
            details if details is not None else {"platform": platform, "http_status": http_status},
            status_code=502,
        )


class NotFoundError(BridgeError):
    """Resource not found."""

    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            "NOT_FOUND",
            f"{resource} '{resource_id}' not found",
            status_code=404,
        )


class AuthenticationError(BridgeError):
    """Webhook signature missing or invalid."""

    def __init__(self, message: str = "Invalid signature"):
        super().__init__("AUTHENTICATION_ERROR", message, status_code=401)


class FeatureDisabledError(BridgeError):
    """Endpoint is gated behind a feature flag that is off."""

    def __init__(self, feature: str):
        super().__init__(
            "FEATURE_DISABLED",
            f"Feature '{feature}' is disabled",
            status_code=404,
        )
