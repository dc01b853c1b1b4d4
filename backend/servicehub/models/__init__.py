from .user import User, UserRole
from .quote import Quote, QuoteStatus
from .conversation import Conversation, ConversationParticipant
from .message import Message, MessageKind
from .support import (
    SupportTicket,
    SupportMessage,
    SupportMessageRead,
    SupportSenderRole,
    SupportSystemEvent,
    TicketStatus,
    TicketCategory,
    TicketPriority,
    TICKET_TRANSITIONS,
)
from .notification import Notification, NotificationType, NotificationPriority

__all__ = [
    "User",
    "UserRole",
    "Quote",
    "QuoteStatus",
    "Conversation",
    "ConversationParticipant",
    "Message",
    "MessageKind",
    "SupportTicket",
    "SupportMessage",
    "SupportMessageRead",
    "SupportSenderRole",
    "SupportSystemEvent",
    "TicketStatus",
    "TicketCategory",
    "TicketPriority",
    "TICKET_TRANSITIONS",
    "Notification",
    "NotificationType",
    "NotificationPriority",
]
