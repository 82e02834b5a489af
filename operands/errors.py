"""Exceptions for operand reconciliation."""


class OperandError(RuntimeError):
    """Raised when an operand cannot be rendered or reconciled."""


class ConfigurationError(OperandError):
    """Raised for non-retryable problems in the declarative configuration.

    Examples: an image path that resolves to nothing, a base template missing
    a required container, or a malformed ``maxUnavailable`` value.
    """
