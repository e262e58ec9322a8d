"""
Channels Package.

Notification and detection channels behind one capability set.
"""

from .base import (
    ResultStatus,
    ChannelResult,
    CheckinResponse,
    Channel,
    ReplyCapableChannel,
    ReplyAdapter,
    as_reply_capable,
)
from .factory import (
    ChannelContext,
    ChannelFactory,
    generate_recipient_id,
    validate_channel_config,
)


__all__ = [
    "ResultStatus",
    "ChannelResult",
    "CheckinResponse",
    "Channel",
    "ReplyCapableChannel",
    "ReplyAdapter",
    "as_reply_capable",
    "ChannelContext",
    "ChannelFactory",
    "generate_recipient_id",
    "validate_channel_config",
]
