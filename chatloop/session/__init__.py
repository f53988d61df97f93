"""Session layer -- client events, broadcasting, cancellation, audit and persistence."""

from chatloop.session.events import ChatEvent
from chatloop.session.broadcaster import Broadcaster
from chatloop.session.controller import CancellationScope, SessionController
from chatloop.session.audit import InteractionLogger
from chatloop.session.store import ConversationStore

__all__ = [
    "Broadcaster",
    "CancellationScope",
    "ChatEvent",
    "ConversationStore",
    "InteractionLogger",
    "SessionController",
]
