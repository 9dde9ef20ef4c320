"""Exception and warning types raised by empirical_peb."""
from __future__ import annotations


class PEBError(Exception):
    """Base class for errors raised while inverting a hierarchy."""


class ParameterisationMismatchError(PEBError, ValueError):
    """Units in one hierarchy disagree on their flattened parameter count."""


class NumericalInstabilityError(PEBError, ArithmeticError):
    """A matrix stayed non-positive-definite after regularisation."""


class NotFoundError(PEBError, KeyError):
    """A unit source has no unit for the requested identifier."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep messages readable.
        return str(self.args[0]) if self.args else ""


class LoadError(PEBError, RuntimeError):
    """A unit source failed while producing a unit."""


class RankDeficiencyWarning(UserWarning):
    """The averaged prior covariance is degenerate; the basis was truncated."""


class UnknownComponentPolicyWarning(UserWarning):
    """Unrecognised covariance-component policy; no components are used."""


class ConvergenceWarning(UserWarning):
    """The estimator used all iterations without meeting its tolerance."""
