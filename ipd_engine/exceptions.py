"""Exceptions raised by the IPD measurement engine."""


class IPDEngineError(Exception):
    """Base engine error."""
    pass


class CalculationError(IPDEngineError):
    """A geometric or metric calculation could not be completed."""
    pass


class InvalidInputError(CalculationError, ValueError):
    """Malformed input: non-finite coordinates, negative dimensions, etc."""
    pass


class DivisionByZeroError(InvalidInputError, ZeroDivisionError):
    """A zero denominator (card width or height) reached a calculation."""
    pass


class CollaboratorError(IPDEngineError):
    """An external collaborator (detector, camera) failed."""
    pass


class ControllerStateError(IPDEngineError):
    """A controller operation was called in a state that does not allow it."""
    pass


class ConfigError(IPDEngineError, ValueError):
    """Configuration-related errors."""
    pass
