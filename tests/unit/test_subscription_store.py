"""Tests for SubscriptionStore - in-memory subscription storage."""

from threading import Thread

import pytest

from conftest import T0, make_subscription
from billing_engine.models.subscription import SpecialOfferStatus, SubscriptionStatus
from billing_engine.repositories.subscription_store import (
    PersistenceError,
    SubscriptionNotFoundError,
    SubscriptionStore,
    get_subscription_store,
    reset_subscription_store,
)

DAY = 86_400_000


class TestSubscriptionStoreBasics:
    """Test basic store functionality."""

    def test_store_initializes_empty(self, store):
        assert store.count() == 0
        assert len(store) == 0
        assert store.get_all() == []

    def test_insert_subscription(self, store):
        row = store.insert(make_subscription())
        assert store.count() == 1
        assert row.id in store
        assert store.exists(row.id)

    def test_insert_duplicate_id_raises(self, store):
        row = make_subscription()
        store.insert(row)
        with pytest.raises(PersistenceError) as exc_info:
            store.insert(row.model_copy(update={"external_subscription_id": "sub_other"}))
        assert "already exists" in str(exc_info.value)

    def test_insert_duplicate_external_id_raises(self, store):
        store.insert(make_subscription(external_id="sub_ext_1"))
        with pytest.raises(PersistenceError):
            store.insert(make_subscription(external_id="sub_ext_1"))

    def test_repr(self, store):
        assert "subscriptions=0" in repr(store)
        store.insert(make_subscription())
        assert "subscriptions=1" in repr(store)


class TestCopySemantics:
    """Rows are handed out as copies; changes only land through writes."""

    def test_mutating_returned_row_does_not_change_store(self, store):
        row = store.insert(make_subscription())
        row.status = SubscriptionStatus.CANCELED

        assert store.get(row.id).status == SubscriptionStatus.ACTIVE

    def test_mutating_inserted_object_does_not_change_store(self, store):
        original = make_subscription()
        store.insert(original)
        original.amount = 1.0

        assert store.get(original.id).amount == 49.0


class TestUpsertByExternalId:
    """Upserts converge on one row per external id."""

    def test_upsert_inserts_when_missing(self, store):
        row = store.upsert_by_external_id(make_subscription(external_id="sub_a"))
        assert store.find_by_external_id("sub_a").id == row.id

    def test_upsert_keeps_local_id_and_created_at(self, store, clock):
        first = store.upsert_by_external_id(make_subscription(external_id="sub_a"))
        clock.advance_time(days=1)

        replacement = make_subscription(external_id="sub_a", status=SubscriptionStatus.PAST_DUE, created_at_millis=T0 + DAY)
        second = store.upsert_by_external_id(replacement)

        assert second.id == first.id
        assert second.created_at_millis == first.created_at_millis
        assert second.status == SubscriptionStatus.PAST_DUE
        assert second.updated_at_millis == T0 + DAY
        assert store.count() == 1

    def test_snapshot_keeps_event_bookkeeping_written_first(self, store):
        store.insert(
            make_subscription(
                external_id="sub_a",
                status=SubscriptionStatus.PAST_DUE,
                period_end_millis=T0 + 60 * DAY,
                last_payment_at_millis=T0,
                last_event_created_millis=T0 + 1000,
            )
        )

        merged = store.upsert_by_external_id(
            make_subscription(external_id="sub_a", period_end_millis=T0 + 30 * DAY, payment_method_id="pm_visa")
        )

        assert merged.last_payment_at_millis == T0
        assert merged.last_event_created_millis == T0 + 1000
        assert merged.status == SubscriptionStatus.PAST_DUE
        assert merged.current_period_end_millis == T0 + 60 * DAY
        assert merged.payment_method_id == "pm_visa"

    def test_snapshot_keeps_special_offer_state(self, store):
        store.insert(
            make_subscription(
                external_id="sub_a",
                special_offer_status=SpecialOfferStatus.APPLIED,
                special_offer_coupon_id="SPECIAL50",
                special_offer_applied_at_millis=T0,
            )
        )

        merged = store.upsert_by_external_id(make_subscription(external_id="sub_a"))

        assert merged.special_offer_status == SpecialOfferStatus.APPLIED
        assert merged.special_offer_coupon_id == "SPECIAL50"
        assert merged.has_used_offer is True

    def test_snapshot_does_not_revive_deleted_row(self, store):
        store.insert(
            make_subscription(
                external_id="sub_a",
                status=SubscriptionStatus.CANCELED,
                period_end_millis=T0 + DAY,
                deleted_at_millis=T0 + DAY,
            )
        )

        merged = store.upsert_by_external_id(make_subscription(external_id="sub_a", period_end_millis=T0 + DAY))

        assert merged.status == SubscriptionStatus.CANCELED
        assert merged.deleted_at_millis == T0 + DAY


class TestModify:
    """Atomic read-modify-write of one row."""

    def test_modify_commits_changes(self, store):
        store.insert(make_subscription(external_id="sub_a"))

        updated = store.modify("sub_a", lambda row: setattr(row, "cancel_at_period_end", True))

        assert updated.cancel_at_period_end is True
        assert store.find_by_external_id("sub_a").cancel_at_period_end is True

    def test_mutator_returning_false_discards_changes(self, store):
        store.insert(make_subscription(external_id="sub_a"))

        def mutator(row):
            row.status = SubscriptionStatus.CANCELED
            return False

        result = store.modify("sub_a", mutator)

        assert result.status == SubscriptionStatus.ACTIVE
        assert store.find_by_external_id("sub_a").status == SubscriptionStatus.ACTIVE

    def test_modify_unknown_external_id_returns_none(self, store):
        assert store.modify("sub_missing", lambda row: None) is None

    def test_modify_cannot_change_identity(self, store):
        row = store.insert(make_subscription(external_id="sub_a"))

        def mutator(current):
            current.id = "other"
            current.external_subscription_id = "sub_b"

        updated = store.modify("sub_a", mutator)

        assert updated.id == row.id
        assert updated.external_subscription_id == "sub_a"
        assert store.find_by_external_id("sub_b") is None

    def test_concurrent_modify_loses_no_updates(self, store):
        store.insert(make_subscription(external_id="sub_a", amount=0.0))

        def increment():
            for _ in range(100):
                store.modify("sub_a", lambda row: setattr(row, "amount", row.amount + 1))

        threads = [Thread(target=increment) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert store.find_by_external_id("sub_a").amount == 500.0


class TestSubscriptionLookup:
    """Test lookup and filtered query methods."""

    def test_get_not_found_raises(self, store):
        with pytest.raises(SubscriptionNotFoundError) as exc_info:
            store.get("sub_local_missing")
        assert "not found" in str(exc_info.value).lower()

    def test_find_by_external_id_returns_none_when_missing(self, store):
        assert store.find_by_external_id("sub_missing") is None

    def test_get_by_owner_oldest_first(self, store):
        newer = store.insert(make_subscription(external_id="sub_b", created_at_millis=T0 + DAY))
        older = store.insert(make_subscription(external_id="sub_a", created_at_millis=T0))
        store.insert(make_subscription(owner_id="owner-2", external_id="sub_c"))

        rows = store.get_by_owner("owner-1")

        assert [r.id for r in rows] == [older.id, newer.id]
        assert store.get_latest_for_owner("owner-1").id == newer.id

    def test_same_creation_time_falls_back_to_insertion_order(self, store):
        first = store.insert(make_subscription(external_id="sub_a"))
        second = store.insert(make_subscription(external_id="sub_b"))

        assert store.get_latest_for_owner("owner-1").id == second.id
        assert store.get_by_owner("owner-1")[0].id == first.id

    def test_latest_for_unknown_owner_is_none(self, store):
        assert store.get_latest_for_owner("nobody") is None

    def test_get_special_offer_rows(self, store):
        store.insert(make_subscription(external_id="sub_a"))
        store.insert(make_subscription(external_id="so_local_abc_1", is_special_offer=True))

        rows = store.get_special_offer_rows()

        assert [r.external_subscription_id for r in rows] == ["so_local_abc_1"]

    def test_get_owner_ids(self, store):
        store.insert(make_subscription(owner_id="owner-b", external_id="sub_a"))
        store.insert(make_subscription(owner_id="owner-a", external_id="sub_b"))
        store.insert(make_subscription(owner_id="owner-a", external_id="sub_c"))

        assert store.get_owner_ids() == ["owner-a", "owner-b"]


class TestStatistics:
    def test_statistics(self, store):
        store.insert(make_subscription(external_id="sub_a"))
        store.insert(make_subscription(owner_id="owner-2", external_id="sub_b", status=SubscriptionStatus.CANCELED))
        store.insert(make_subscription(owner_id="owner-3", external_id="so_local_x_1", is_special_offer=True))

        stats = store.get_statistics()

        assert stats["total_subscriptions"] == 3
        assert stats["unique_owners"] == 3
        assert stats["special_offer_rows"] == 1
        assert stats["active"] == 2
        assert stats["canceled"] == 1

    def test_clear(self, store):
        store.insert(make_subscription())
        store.clear()
        assert store.count() == 0
        assert store.find_by_external_id("sub_ext_1") is None


class TestGlobalStore:
    def test_singleton(self):
        assert get_subscription_store() is get_subscription_store()

    def test_reset_clears_global_store(self):
        store = get_subscription_store()
        store.insert(make_subscription(external_id="sub_global"))
        reset_subscription_store()
        assert get_subscription_store().count() == 0

    def test_separate_instances_are_independent(self):
        a = SubscriptionStore()
        b = SubscriptionStore()
        a.insert(make_subscription())
        assert b.count() == 0
