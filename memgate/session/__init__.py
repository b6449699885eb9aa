"""Conversation window management."""

from memgate.session.manager import Conversation, ConversationManager

__all__ = ["Conversation", "ConversationManager"]
