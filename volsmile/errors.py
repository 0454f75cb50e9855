"""
Exception hierarchy for the smile fitting engine.

Batch callers (quote conversion, smile grouping, surface fitting) catch
VolSmileError per item and carry on with the rest, so every failure in
the core is raised as one of these rather than a bare builtin.
"""


class VolSmileError(Exception):
    """Base class for all errors raised by volsmile."""


class UnsolvableError(VolSmileError):
    """The maths has no answer for these inputs.

    Price outside no-arbitrage bounds, variance below the floor, curve
    parameters violating a constraint, or a fit that found no curve.
    """


class InvalidInputError(VolSmileError, ValueError):
    """A caller-supplied value violates a precondition."""


class ExpiredOptionError(InvalidInputError):
    """Time to expiry is zero or negative."""


class UnusableDataError(InvalidInputError):
    """An upstream market data record could not be converted."""


class InternalError(VolSmileError, RuntimeError):
    """An invariant the implementation should guarantee was broken."""
