"""
Test Fixtures Package
Fake backend, deterministic time control
"""

from .time_control import FakeClock, no_sleep
from .fake_backend import FakeBackend, OPS_ACTIONS, SENDER_ACTIONS

__all__ = [
    'FakeClock',
    'no_sleep',
    'FakeBackend',
    'OPS_ACTIONS',
    'SENDER_ACTIONS',
]
