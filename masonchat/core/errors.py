class ChatError(Exception):
    """Base class for chat subsystem errors."""


class MessageValidationError(ChatError, ValueError):
    """A message is missing a required field and was not persisted."""

    def __init__(self, field: str, message: str = None) -> None:
        self.field = field
        super().__init__(message or f"Field '{field}' is required and must be non-empty")


class ChannelConnectionError(ChatError, ConnectionError):
    """The real-time channel could not be established or was lost."""


class IdentityError(ChatError):
    """The local user's identity could not be resolved (not logged in)."""
