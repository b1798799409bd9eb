"""Multi-tenant ConversationRelay server for the voice AI workshop."""

__version__ = "1.0.0"
