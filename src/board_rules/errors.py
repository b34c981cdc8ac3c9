"""Exceptions raised by the rule engine."""


class BoardRulesError(Exception):
    """Base class for board rule errors."""

    code = "BOARD_RULES_ERROR"


class ConfigValidationError(BoardRulesError, ValueError):
    """Raised when rule configuration names unknown actions or trigger kinds."""

    code = "CONFIG_VALIDATION_ERROR"


class ConditionSyntaxError(BoardRulesError, ValueError):
    """Raised when a condition expression cannot be parsed."""

    code = "CONDITION_SYNTAX_ERROR"

    def __init__(self, message: str, expression: str = "", position: int | None = None) -> None:
        if position is not None:
            message = f"{message} at position {position} in {expression!r}"
        elif expression:
            message = f"{message} in {expression!r}"
        super().__init__(message)
        self.expression = expression
        self.position = position


class ActionHandlerError(BoardRulesError):
    """Raised when an action handler cannot process an entity."""

    code = "ACTION_HANDLER_ERROR"

    def __init__(self, entity_id: str, action_name: str, message: str) -> None:
        super().__init__(f"{action_name} failed for {entity_id}: {message}")
        self.entity_id = entity_id
        self.action_name = action_name


class IllegalTransition(BoardRulesError):
    """Raised (or reported) when a column transition is not allowed."""

    code = "ILLEGAL_TRANSITION"

    def __init__(self, from_column: str | None, to_column: str | None, message: str | None = None) -> None:
        source = from_column or "None"
        super().__init__(message or f'Transition from "{source}" to "{to_column}" is not allowed')
        self.from_column = from_column
        self.to_column = to_column


class InvariantViolation(BoardRulesError):
    """Reported when an intent would break a board invariant."""

    code = "INVARIANT_VIOLATION"


class ExecutionFailed(BoardRulesError):
    """Reported when the board API could not apply an intent."""

    code = "EXECUTION_FAILED"

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


__all__ = [
    "ActionHandlerError",
    "BoardRulesError",
    "ConditionSyntaxError",
    "ConfigValidationError",
    "ExecutionFailed",
    "IllegalTransition",
    "InvariantViolation",
]
