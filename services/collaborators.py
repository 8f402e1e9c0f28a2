"""
Collaborator interfaces consumed by the escrow core

Identity, notification delivery and the tagged party variant used when
addressing buyers and suppliers. Notification dispatch is fire-and-forget:
a failing dispatcher is logged and never undoes a committed transition.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Protocol

from models import ActorRole, Transaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    """The authenticated caller, as reported by the identity service"""
    user_id: str
    role: ActorRole

    @property
    def label(self) -> str:
        return f"{self.role.value}:{self.user_id}"


SYSTEM_ACTOR = Actor(user_id="system", role=ActorRole.SYSTEM)


class PartyKind(Enum):
    BUYER = "buyer"
    SUPPLIER = "supplier"


@dataclass(frozen=True)
class Party:
    """Buyer or supplier on a transaction, addressed uniformly"""
    kind: PartyKind
    id: str
    email: Optional[str] = None
    name: Optional[str] = None

    @classmethod
    def buyer_of(cls, transaction: Transaction) -> "Party":
        return cls(PartyKind.BUYER, transaction.buyer_id, transaction.buyer_email, transaction.buyer_name)

    @classmethod
    def supplier_of(cls, transaction: Transaction) -> "Party":
        return cls(
            PartyKind.SUPPLIER, transaction.supplier_id,
            transaction.supplier_email, transaction.supplier_name,
        )

    @property
    def display_name(self) -> str:
        return self.name or self.email or f"{self.kind.value.title()} {self.id}"


def parties_of(transaction: Transaction) -> List[Party]:
    return [Party.buyer_of(transaction), Party.supplier_of(transaction)]


def party_for_actor(transaction: Transaction, actor: Actor) -> Optional[Party]:
    """Return the party the actor acts as, or None when not a party"""
    if actor.role == ActorRole.BUYER and actor.user_id == transaction.buyer_id:
        return Party.buyer_of(transaction)
    if actor.role == ActorRole.SUPPLIER and actor.user_id == transaction.supplier_id:
        return Party.supplier_of(transaction)
    return None


@dataclass(frozen=True)
class Audience:
    """Recipients of a notification"""
    parties: List[Party] = field(default_factory=list)
    include_admins: bool = False


@dataclass(frozen=True)
class Notification:
    event: str
    transaction_id: str
    audience: Audience


class NotificationDispatcher(Protocol):
    def notify(self, event: str, transaction_id: str, audience: Audience) -> None:
        ...


class LoggingNotificationDispatcher:
    """Default dispatcher: records the notification in the log only"""

    def notify(self, event: str, transaction_id: str, audience: Audience) -> None:
        recipients = ", ".join(p.display_name for p in audience.parties) or "-"
        logger.info(
            f"📣 NOTIFY {event} for {transaction_id} -> {recipients}"
            f"{' +admins' if audience.include_admins else ''}"
        )


_dispatcher: NotificationDispatcher = LoggingNotificationDispatcher()


def set_notification_dispatcher(dispatcher: NotificationDispatcher) -> NotificationDispatcher:
    """Install a dispatcher and return the previous one"""
    global _dispatcher
    previous = _dispatcher
    _dispatcher = dispatcher
    return previous


def get_notification_dispatcher() -> NotificationDispatcher:
    return _dispatcher


def dispatch_notifications(notifications: List[Notification]) -> int:
    """Send queued notifications after commit; returns how many were delivered"""
    delivered = 0
    for notification in notifications:
        try:
            _dispatcher.notify(notification.event, notification.transaction_id, notification.audience)
            delivered += 1
        except Exception as e:
            logger.error(
                f"Notification {notification.event} for {notification.transaction_id} failed: {e}"
            )
    return delivered


__all__ = [
    "Actor",
    "SYSTEM_ACTOR",
    "PartyKind",
    "Party",
    "parties_of",
    "party_for_actor",
    "Audience",
    "Notification",
    "NotificationDispatcher",
    "LoggingNotificationDispatcher",
    "set_notification_dispatcher",
    "get_notification_dispatcher",
    "dispatch_notifications",
]
