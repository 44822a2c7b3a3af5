"""
External Integrations
"""

from .message_sender import MessageSender, NotificationType, OutboundMessage
from .invite_gateway import InviteNotificationGateway, InviteLinkGateway
from .firestore_client import (
    EncryptionManager,
    FirestorePlanRepository,
    FirestoreAvailabilityRepository,
    FirestoreInviteLinkRepository,
    create_repositories,
)

__all__ = [
    "MessageSender",
    "NotificationType",
    "OutboundMessage",
    "InviteNotificationGateway",
    "InviteLinkGateway",
    "EncryptionManager",
    "FirestorePlanRepository",
    "FirestoreAvailabilityRepository",
    "FirestoreInviteLinkRepository",
    "create_repositories"
]
