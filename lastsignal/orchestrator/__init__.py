"""
Orchestrator Package.

Control loop, application facade and command-line interface.

Components:
- models: Phase, cycle results, status snapshot
- scheduler: Detect / request / escalate cycle and loop
- core: Logging setup and the LastSignalApp facade
- cli: argparse entry point
"""

from .models import Phase, CycleResult, StatusSnapshot, ChannelHealth
from .scheduler import EscalationScheduler
from .core import LastSignalApp, setup_logging


__all__ = [
    "Phase",
    "CycleResult",
    "StatusSnapshot",
    "ChannelHealth",
    "EscalationScheduler",
    "LastSignalApp",
    "setup_logging",
]
