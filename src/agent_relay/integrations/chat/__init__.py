"""Conversation-level job scheduling."""

from .task_queue import ConversationTaskQueue, SubmitResult

__all__ = ["ConversationTaskQueue", "SubmitResult"]
