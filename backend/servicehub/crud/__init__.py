from . import crud_user
from . import crud_quote
from . import crud_conversation
from . import crud_message
from . import crud_notification
from . import crud_support

__all__ = [
    "crud_user",
    "crud_quote",
    "crud_conversation",
    "crud_message",
    "crud_notification",
    "crud_support",
]
