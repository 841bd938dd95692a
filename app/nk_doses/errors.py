"""Exceptions raised by the dose scheduling engine.

The API layer maps these onto HTTP status codes in srv/api/errors.py.
"""


class DoseEngineError(Exception):
    pass


class ConfigError(DoseEngineError):
    pass


class DoseValidationError(DoseEngineError):
    """Input rejected before any state was touched."""


class ScheduleValidationError(DoseValidationError):
    pass


class DoseNotFoundError(DoseEngineError):
    pass


class InvalidTransitionError(DoseEngineError):
    """The dose instance is no longer pending."""


class DoseInconsistencyError(DoseEngineError):
    """A dose log exists but the instance status was not updated to match.

    Recovery is `DoseService.repair_instance_status`, which only retries the
    status update and never writes a second log.
    """

    def __init__(self, instance_id: str, log_id: str | None, message: str = ""):
        self.instance_id = instance_id
        self.log_id = log_id
        super().__init__(
            message
            or f"dose log {log_id} recorded but instance {instance_id} is still pending"
        )
