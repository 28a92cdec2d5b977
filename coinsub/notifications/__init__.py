"""Outbound user notifications."""

from .email import EmailMessage, EmailNotifier, NotificationError

__all__ = ["EmailMessage", "EmailNotifier", "NotificationError"]
