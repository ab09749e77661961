from enum import StrEnum


class ErrorKind(StrEnum):
    INFEASIBLE = "infeasible"
    CLARIFICATION_NEEDED = "clarification_needed"
    TOO_COMPLEX = "too_complex"
    UPSTREAM_TIMEOUT = "upstream_timeout"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    EXECUTION_ERROR = "execution_error"
    VALIDATION_ERROR = "validation_error"


USER_FACING_KINDS = frozenset({ErrorKind.INFEASIBLE, ErrorKind.CLARIFICATION_NEEDED, ErrorKind.TOO_COMPLEX})


class QrouteError(Exception):
    kind: ErrorKind

    def __init__(self, message: str, suggestions: list[str] | None = None):
        super().__init__(message)
        self.message = message
        self.suggestions = suggestions or []

    @property
    def user_facing(self) -> bool:
        return self.kind in USER_FACING_KINDS


class Infeasible(QrouteError):
    kind = ErrorKind.INFEASIBLE


class ClarificationNeeded(QrouteError):
    kind = ErrorKind.CLARIFICATION_NEEDED


class TooComplex(QrouteError):
    kind = ErrorKind.TOO_COMPLEX


class UpstreamTimeout(QrouteError):
    kind = ErrorKind.UPSTREAM_TIMEOUT


class UpstreamUnavailable(QrouteError):
    kind = ErrorKind.UPSTREAM_UNAVAILABLE


class ExecutionError(QrouteError):
    """Generated SQL failed at the executor."""

    kind = ErrorKind.EXECUTION_ERROR

    def __init__(self, message: str, sql_text: str | None = None):
        super().__init__(message)
        self.sql_text = sql_text


class InputValidationError(QrouteError):
    """Malformed caller input to the orchestrator."""

    kind = ErrorKind.VALIDATION_ERROR


UPSTREAM_ERRORS = (UpstreamTimeout, UpstreamUnavailable)
