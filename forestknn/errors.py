"""Exceptions and warnings raised by forestknn."""

from __future__ import annotations

import logging
import warnings
from typing import Type


class ForestKnnError(Exception):
    """Base class for all forestknn errors."""


class InvalidInputError(ForestKnnError, ValueError):
    """Malformed grid, mismatched lengths, unknown option or unsupported type."""


class SchemaMismatchError(InvalidInputError):
    """Predictor names at prediction time differ from the fitted feature names."""


class DegenerateStatisticError(ForestKnnError, ArithmeticError):
    """An accuracy statistic has a zero or undefined denominator."""


class PartialComputeError(ForestKnnError, RuntimeError):
    """One or more imputation bands failed and the caller asked to fail fast."""

    def __init__(self, message: str, errors=None):
        super().__init__(message)
        self.errors = list(errors or [])


class ForestKnnWarning(UserWarning):
    """Base class for forestknn warnings."""


class ConstraintWarning(ForestKnnWarning):
    """A request was only partially satisfied (e.g. fewer samples than asked)."""


class PartialComputeWarning(ForestKnnWarning):
    """Some imputation bands failed; the result is partial."""


def warn(
    logger: logging.Logger,
    message: str,
    category: Type[Warning] = ConstraintWarning,
    stacklevel: int = 3,
) -> None:
    """Log ``message`` and emit it as a Python warning."""
    logger.warning(message)
    warnings.warn(message, category, stacklevel=stacklevel)
