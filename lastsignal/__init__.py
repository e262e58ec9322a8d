"""
LastSignal - dead-man's-switch service.

Periodically expects a human check-in, requests one when it is
overdue, and broadcasts a last signal to every configured
recipient exactly once when the request also goes unanswered.
"""

__version__ = "0.1.0"
