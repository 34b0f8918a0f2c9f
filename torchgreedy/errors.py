"""
Exception hierarchy for torchgreedy.

Every failure aborts the current run. The classes below also derive from the
matching builtin exception so callers that catch ``ValueError`` or ``OSError``
keep working.
"""

from pathlib import Path


class GreedyError(Exception):
    """Base class for all registration errors."""


class ConfigurationError(GreedyError, ValueError):
    """Invalid or inconsistent parameters (dimension mismatch, bad exponent, missing input)."""


class NumericDivergenceError(GreedyError, ArithmeticError):
    """A metric value or gradient became non-finite."""

    def __init__(self, message: str, level: int | None = None, metric: str | None = None):
        context = []
        if level is not None:
            context.append(f"level {level}")
        if metric is not None:
            context.append(f"metric {metric}")
        if context:
            message = f"{message} ({', '.join(context)})"
        super().__init__(message)
        self.level = level
        self.metric = metric


class ResourceError(GreedyError, OSError):
    """A file could not be read or written."""

    def __init__(self, message: str, path: str | Path | None = None):
        super().__init__(message)
        self.path = None if path is None else str(path)
