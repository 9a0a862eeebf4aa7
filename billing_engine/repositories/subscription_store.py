"""Subscription store - in-memory document storage for subscription rows.

Offers the contract of a document database without multi-document
transactions: single-row atomic insert, upsert keyed by the external
subscription id, read-modify-write on one row, and filtered queries.
Rows are handed out as copies; a change only lands through a write call.
"""

import threading
from typing import Callable, Dict, List, Optional

from billing_engine.errors import BillingError
from billing_engine.logging_config import get_logger
from billing_engine.models.subscription import SpecialOfferStatus, Subscription, SubscriptionStatus
from billing_engine.services.clock import Clock, get_clock

logger = get_logger(__name__)

SPECIAL_OFFER_FIELDS = (
    "special_offer_status",
    "special_offer_coupon_id",
    "special_offer_discount_percent",
    "special_offer_discount_amount",
    "special_offer_description",
    "special_offer_discount_start_millis",
    "special_offer_discount_end_millis",
    "special_offer_applied_at_millis",
)


class SubscriptionNotFoundError(BillingError):
    """Raised when a subscription is not found in the store."""

    pass


class PersistenceError(BillingError):
    """Raised when a write to the store cannot be completed."""

    pass


class SubscriptionStore:
    """In-memory storage for subscription rows.

    Thread-safe storage with lookup by local id, external subscription id
    and owner.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._subscriptions: Dict[str, Subscription] = {}
        self._by_external_id: Dict[str, str] = {}
        self._sequence: Dict[str, int] = {}
        self._next_sequence = 0
        self._lock = threading.RLock()
        self._clock = clock

    def _now(self) -> int:
        return (self._clock if self._clock is not None else get_clock()).now_millis()

    def _store(self, subscription: Subscription) -> Subscription:
        # Caller holds the lock
        stored = subscription.model_copy(deep=True)
        self._subscriptions[stored.id] = stored
        self._by_external_id[stored.external_subscription_id] = stored.id
        if stored.id not in self._sequence:
            self._sequence[stored.id] = self._next_sequence
            self._next_sequence += 1
        return stored.model_copy(deep=True)

    def _sort_key(self, subscription: Subscription) -> tuple:
        return (subscription.created_at_millis, self._sequence.get(subscription.id, 0))

    def insert(self, subscription: Subscription) -> Subscription:
        """Insert a new row.

        Raises:
            PersistenceError: If the local id or external id is already taken
        """
        with self._lock:
            if subscription.id in self._subscriptions:
                raise PersistenceError(f"Subscription with id '{subscription.id}' already exists")
            if subscription.external_subscription_id in self._by_external_id:
                raise PersistenceError(
                    f"Subscription with external id '{subscription.external_subscription_id}' already exists"
                )
            logger.debug("subscription_row_inserted", subscription_id=subscription.id)
            return self._store(subscription)

    @staticmethod
    def _merge(existing: Subscription, incoming: Subscription) -> Subscription:
        """Fold a full snapshot into a row that already holds its external id.

        Webhooks may have reached the row before the snapshot's writer did,
        so event bookkeeping survives, the period end never moves backwards,
        and an event-driven status wins over the snapshot's.
        """
        row = incoming.model_copy(deep=True)
        row.id = existing.id
        row.created_at_millis = existing.created_at_millis
        for field in ("last_event_created_millis", "last_payment_at_millis"):
            current, new = getattr(existing, field), getattr(incoming, field)
            setattr(row, field, current if new is None else max(new, current or 0))
        row.deleted_at_millis = existing.deleted_at_millis or incoming.deleted_at_millis

        if existing.last_event_created_millis is not None or existing.deleted_at_millis is not None:
            row.status = existing.status
            row.cancel_at_period_end = existing.cancel_at_period_end
        if existing.current_period_end_millis > incoming.current_period_end_millis:
            row.current_period_start_millis = existing.current_period_start_millis
            row.current_period_end_millis = existing.current_period_end_millis
        if incoming.special_offer_status == SpecialOfferStatus.NONE:
            for field in SPECIAL_OFFER_FIELDS:
                setattr(row, field, getattr(existing, field))
        row.payment_method_id = incoming.payment_method_id or existing.payment_method_id
        row.original_subscription_id = incoming.original_subscription_id or existing.original_subscription_id
        return row

    def upsert_by_external_id(self, subscription: Subscription) -> Subscription:
        """Insert a row, or merge into the row holding the same external id.

        The existing row keeps its local id, creation time and event
        bookkeeping, so repeated upserts of the same gateway subscription
        converge on one row. See ``_merge``.

        Returns:
            The stored row
        """
        with self._lock:
            existing_id = self._by_external_id.get(subscription.external_subscription_id)
            if existing_id is not None:
                row = self._merge(self._subscriptions[existing_id], subscription)
            elif subscription.id in self._subscriptions:
                raise PersistenceError(f"Subscription with id '{subscription.id}' already exists")
            else:
                row = subscription.model_copy(deep=True)
            row.updated_at_millis = self._now()
            logger.debug(
                "subscription_row_upserted",
                subscription_id=row.id,
                external_subscription_id=row.external_subscription_id,
                merged=existing_id is not None,
            )
            return self._store(row)

    def modify(
        self,
        external_subscription_id: str,
        mutator: Callable[[Subscription], Optional[bool]],
    ) -> Optional[Subscription]:
        """Atomic read-modify-write of one row.

        The mutator receives a working copy. Returning False discards the
        change; anything else commits it.

        Returns:
            The row after the call, or None if no row holds the external id
        """
        with self._lock:
            row_id = self._by_external_id.get(external_subscription_id)
            if row_id is None:
                return None
            working = self._subscriptions[row_id].model_copy(deep=True)
            if mutator(working) is False:
                return self._subscriptions[row_id].model_copy(deep=True)
            working.id = row_id
            working.external_subscription_id = external_subscription_id
            working.updated_at_millis = self._now()
            return self._store(working)

    def get(self, subscription_id: str) -> Subscription:
        """Get a row by local id.

        Raises:
            SubscriptionNotFoundError: If not found
        """
        with self._lock:
            subscription = self._subscriptions.get(subscription_id)
            if subscription is None:
                raise SubscriptionNotFoundError(f"Subscription not found: {subscription_id}")
            return subscription.model_copy(deep=True)

    def find_by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        with self._lock:
            row_id = self._by_external_id.get(external_subscription_id)
            if row_id is None:
                return None
            return self._subscriptions[row_id].model_copy(deep=True)

    def get_by_owner(self, owner_id: str) -> List[Subscription]:
        """Get every row of an owner, oldest first."""
        with self._lock:
            rows = [s for s in self._subscriptions.values() if s.owner_id == owner_id]
            rows.sort(key=self._sort_key)
            return [s.model_copy(deep=True) for s in rows]

    def get_latest_for_owner(self, owner_id: str) -> Optional[Subscription]:
        """Get the owner's most recently created row."""
        rows = self.get_by_owner(owner_id)
        return rows[-1] if rows else None

    def get_special_offer_rows(self) -> List[Subscription]:
        """Get every special-offer pseudo-subscription row."""
        with self._lock:
            return [s.model_copy(deep=True) for s in self._subscriptions.values() if s.is_special_offer]

    def get_all(self) -> List[Subscription]:
        with self._lock:
            rows = sorted(self._subscriptions.values(), key=self._sort_key)
            return [s.model_copy(deep=True) for s in rows]

    def get_owner_ids(self) -> List[str]:
        with self._lock:
            return sorted({s.owner_id for s in self._subscriptions.values()})

    def count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def exists(self, subscription_id: str) -> bool:
        with self._lock:
            return subscription_id in self._subscriptions

    def clear(self) -> None:
        """Clear all rows from the store.

        Warning: This removes all data. Use with caution.
        """
        with self._lock:
            self._subscriptions.clear()
            self._by_external_id.clear()
            self._sequence.clear()
            self._next_sequence = 0

    def get_statistics(self) -> Dict[str, int]:
        """Get store statistics.

        Returns:
            Dictionary with total_subscriptions, unique_owners,
            special_offer_rows and one count per status value
        """
        with self._lock:
            subscriptions = list(self._subscriptions.values())
            stats = {
                "total_subscriptions": len(subscriptions),
                "unique_owners": len({s.owner_id for s in subscriptions}),
                "special_offer_rows": sum(1 for s in subscriptions if s.is_special_offer),
            }
            for status in SubscriptionStatus:
                stats[status.value] = sum(1 for s in subscriptions if s.status == status)
            return stats

    def __len__(self) -> int:
        return self.count()

    def __contains__(self, subscription_id: str) -> bool:
        return self.exists(subscription_id)

    def __repr__(self) -> str:
        return f"SubscriptionStore(subscriptions={self.count()})"


# Global store instance
_store_instance: Optional[SubscriptionStore] = None
_store_lock = threading.Lock()


def get_subscription_store() -> SubscriptionStore:
    """Get global subscription store instance (singleton)."""
    global _store_instance
    if _store_instance is None:
        with _store_lock:
            if _store_instance is None:
                _store_instance = SubscriptionStore()
    return _store_instance


def reset_subscription_store() -> None:
    """Reset global subscription store (clears all data)."""
    store = get_subscription_store()
    store.clear()
