"""
Check-in Package.

Detects check-ins from channel replies.
"""

from .detector import DetectionResult, CheckinDetector


__all__ = [
    "DetectionResult",
    "CheckinDetector",
]
