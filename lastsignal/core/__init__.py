"""
Core Module Package.

Infrastructure every other package depends on.

Components:
- clock: Injectable UTC time source
- duration: Unit-carrying threshold values
- exceptions: Error taxonomy
- state_manager: Persisted lifecycle state
"""

from .clock import ClockProtocol, SystemClock, MockClock
from .duration import ConfigDuration
from .exceptions import (
    LastSignalError,
    ConfigurationError,
    ChannelError,
    StatePersistenceError,
    DeliveryExhaustedError,
    EscalationCompleteError,
)
from .state_manager import LifecycleState, StateManager


__all__ = [
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "ConfigDuration",
    "LastSignalError",
    "ConfigurationError",
    "ChannelError",
    "StatePersistenceError",
    "DeliveryExhaustedError",
    "EscalationCompleteError",
    "LifecycleState",
    "StateManager",
]
