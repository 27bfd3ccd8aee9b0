"""
Client library for the bot portal delivery channel.
"""
from .conversation import ConversationView, LocalMessage, LocalState, normalize_content
from .delivery import (
    DeliveryClient,
    DeliveryClientError,
    DeliveryConfig,
    DeliveryOutcome,
    OutcomeKind
)

__all__ = [
    "ConversationView",
    "LocalMessage",
    "LocalState",
    "normalize_content",
    "DeliveryClient",
    "DeliveryClientError",
    "DeliveryConfig",
    "DeliveryOutcome",
    "OutcomeKind",
]
