from chatsync.sync.conversations import ConversationSync
from chatsync.sync.messages import MessageSync
from chatsync.sync.session import SyncSession
from chatsync.sync.subscriptions import SubscriptionRegistry

__all__ = ["ConversationSync", "MessageSync", "SubscriptionRegistry", "SyncSession"]
