"""External integration adapters."""

from .email import EmailService
from .slack import SlackClient

__all__ = [
    "EmailService",
    "SlackClient",
]
