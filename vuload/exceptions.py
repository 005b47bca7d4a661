"""
Exception hierarchy for the load engine.

Every error the engine raises on purpose derives from
:class:`VuloadError`, so the CLI can map the whole family onto exit codes
with a single ``except`` clause.

Two exceptions are control-flow signals rather than failures:
:class:`IterationInterrupted` is raised at a virtual user's suspension
points once cancellation is observed (as :class:`TestAborted` when the
run was aborted), and :class:`StopVirtualUser` may be raised by a load
script to retire its own virtual user (the analogue of Locust's
``StopUser``).
"""

from __future__ import annotations


class VuloadError(Exception):
    """Base class for all engine errors."""


class ScriptError(VuloadError):
    """The load script cannot be imported or lacks a required function."""


class OptionsError(VuloadError):
    """The options / load profile are malformed."""


class ThresholdSyntaxError(VuloadError):
    """A threshold expression cannot be parsed or does not fit its metric."""


class SetupError(VuloadError):
    """The script's ``setup()`` raised; the run fails before scheduling."""


class IterationInterrupted(Exception):
    """Cancellation was observed at a suspension point of a virtual user."""


class TestAborted(IterationInterrupted, VuloadError):
    """
    The run was cancelled by the script or an abort-on-fail threshold.

    Raised from ``ctx.abort()`` and at the suspension points of every
    other virtual user once the run is aborted; it ends the iteration like
    any other interruption.
    """

    # Not a pytest test class despite the name.
    __test__ = False


class StopVirtualUser(Exception):
    """Raised from a load script to retire the calling virtual user."""
