"""
vuload -- a virtual-user load generator.

Load scripts import their building blocks from here::

    from vuload import Counter, Trend, StopVirtualUser
"""

from vuload.exceptions import StopVirtualUser, TestAborted, VuloadError
from vuload.metrics import Counter, Gauge, Rate, Trend
from vuload.runner import Runner, RunResult
from vuload.script import load_script

__version__ = "0.1.0"

__all__ = [
    "Counter",
    "Gauge",
    "Rate",
    "RunResult",
    "Runner",
    "StopVirtualUser",
    "TestAborted",
    "Trend",
    "VuloadError",
    "load_script",
]
