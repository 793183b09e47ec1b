"""Error taxonomy for the intake engine.

Failures are contained per turn: the driver lets ``OracleUnavailable`` reach
the caller with state untouched, while parser and reconciler problems degrade
to "no structured update" and are only logged.
"""


class IntakeError(Exception):
    """Base class for every error raised by the intake engine."""


class OracleUnavailable(IntakeError):
    """The extraction oracle could not be reached or timed out. Retryable."""


class MalformedOracleResponse(IntakeError):
    """The oracle's structured block could not be parsed or validated."""


class SchemaViolation(IntakeError):
    """A payload referenced a criterion or field the schema does not define."""

    def __init__(self, criterion_id: str, field_name: str | None = None):
        self.criterion_id = criterion_id
        self.field_name = field_name
        if field_name is None:
            msg = f"Unknown criterion: {criterion_id}"
        else:
            msg = f"Field '{field_name}' is not defined for criterion {criterion_id}"
        super().__init__(msg)


class FieldValidationError(IntakeError, ValueError):
    """A raw field value failed type normalization."""

    def __init__(self, field_type: str, raw_value, reason: str):
        self.field_type = field_type
        self.raw_value = raw_value
        self.reason = reason
        super().__init__(f"Invalid {field_type} value {raw_value!r}: {reason}")


class UnknownCriterionError(IntakeError, KeyError):
    """Registry lookup of an id the schema does not define (caller error)."""

    def __init__(self, criterion_id: str):
        self.criterion_id = criterion_id
        super().__init__(criterion_id)

    def __str__(self) -> str:
        return f"Unknown criterion id: {self.criterion_id}"


class InvalidTransitionError(IntakeError, ValueError):
    """A conversation phase change that the state machine does not allow."""


class TurnInProgressError(IntakeError):
    """A turn was dispatched while another one is still being reconciled."""


class DocumentIndexingError(IntakeError):
    """Document upload or indexing failed or did not finish in time."""
