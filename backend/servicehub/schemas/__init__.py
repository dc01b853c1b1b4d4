from .message import (
    Attachment,
    ConversationRef,
    MediaItem,
    MessageContent,
    MessageResponse,
    OnlineStatusIn,
    SendMessageIn,
)
from .notification import (
    JoinNotificationsIn,
    MarkAllReadResponse,
    NotificationCreate,
    NotificationRef,
    NotificationResponse,
    UnreadCountResponse,
)
from .support import (
    SupportMessageIn,
    SupportMessageReadIn,
    SupportMessageResponse,
    TicketAssign,
    TicketCreate,
    TicketRef,
    TicketResolve,
    TicketResponse,
)
