"""
RelayChat - realtime subscriptions and presence for chat clients.

Keeps one self-healing change-feed channel per logical subscription, tracks
each user's online/offline/idle/dnd status, and relays row changes of the
backing store to local UI clients over WebSocket.
"""

__version__ = "0.1.0"

from relaychat.main import app

__all__ = ["app", "__version__"]
