"""
Messages Package.
"""

from .adapter import (
    CHECKIN_MESSAGE,
    MessageAdapter,
    FileMessageAdapter,
    create_message_adapter,
)


__all__ = [
    "CHECKIN_MESSAGE",
    "MessageAdapter",
    "FileMessageAdapter",
    "create_message_adapter",
]
