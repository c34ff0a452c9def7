"""
Tests for subscription reconciliation

Covers snapshot extraction, idempotency, arrival-order convergence and
attribution by customer id when metadata has no user id.
"""

import stripe

from src.schemas.billing import SubscriptionRecord, SubscriptionStatus
from src.services.reconciliation import (
    SubscriptionSnapshot,
    apply_subscription_snapshot,
    get_stripe_value,
    reconcile_record,
    snapshot_from_subscription,
    stripe_id,
    timestamp_to_iso,
    user_id_from_metadata,
)
from tests.helpers.stripe_payloads import subscription_payload


class TestSnapshotExtraction:
    def test_plain_dict(self):
        snapshot = snapshot_from_subscription(
            subscription_payload(status="trialing", metadata={"user_id": "u1"})
        )

        assert snapshot.subscription_id == "sub_123"
        assert snapshot.customer_id == "cus_123"
        assert snapshot.status == SubscriptionStatus.TRIALING
        assert snapshot.price_id == "price_monthly"
        assert snapshot.current_period_end == "2026-01-01T00:00:00+00:00"
        assert snapshot.user_id == "u1"

    def test_stripe_object(self):
        """StripeObject field `items` must not resolve to the mapping method"""
        subscription = stripe.Subscription.construct_from(
            subscription_payload(metadata={"user_id": "u1"}), "sk_test_123"
        )

        snapshot = snapshot_from_subscription(subscription)

        assert snapshot.price_id == "price_monthly"
        assert snapshot.user_id == "u1"
        assert snapshot.status == SubscriptionStatus.ACTIVE

    def test_period_end_on_item(self):
        snapshot = snapshot_from_subscription(subscription_payload(period_on_item=True))
        assert snapshot.current_period_end == "2026-01-01T00:00:00+00:00"

    def test_expanded_customer(self):
        payload = subscription_payload(customer={"id": "cus_expanded", "object": "customer"})
        assert snapshot_from_subscription(payload).customer_id == "cus_expanded"

    def test_legacy_metadata_key(self):
        payload = subscription_payload(metadata={"supabase_user_id": "u_legacy"})
        assert snapshot_from_subscription(payload).user_id == "u_legacy"

    def test_missing_fields(self):
        snapshot = snapshot_from_subscription({"id": "sub_1", "status": "incomplete_expired"})

        assert snapshot.customer_id is None
        assert snapshot.price_id is None
        assert snapshot.current_period_end is None
        assert snapshot.status == SubscriptionStatus.CANCELED

    def test_timestamp_conversion(self):
        assert timestamp_to_iso(None) is None
        assert timestamp_to_iso("not-a-number") is None
        assert timestamp_to_iso(0) == "1970-01-01T00:00:00+00:00"

    def test_get_stripe_value_attribute_objects(self):
        class Invoice:
            subscription = "sub_attr"

        assert get_stripe_value(Invoice(), "subscription") == "sub_attr"
        assert get_stripe_value(None, "anything") is None

    def test_stripe_object_missing_field(self):
        invoice = stripe.Invoice.construct_from({"id": "in_1", "object": "invoice"}, "sk_test_123")

        assert get_stripe_value(invoice, "id") == "in_1"
        assert get_stripe_value(invoice, "subscription") is None

    def test_stripe_session_metadata_and_expanded_customer(self):
        session = stripe.checkout.Session.construct_from(
            {
                "id": "cs_1",
                "object": "checkout.session",
                "customer": {"id": "cus_expanded", "object": "customer"},
                "metadata": {"user_id": "u1"},
            },
            "sk_test_123",
        )

        assert stripe_id(get_stripe_value(session, "customer")) == "cus_expanded"
        assert user_id_from_metadata(get_stripe_value(session, "metadata")) == "u1"


class TestReconcileRecord:
    def test_snapshot_fields_win(self):
        current = SubscriptionRecord(
            user_id="u1", status="trialing", price_id="price_old", stripe_customer_id="cus_1"
        )
        snapshot = SubscriptionSnapshot(
            subscription_id="sub_1",
            customer_id="cus_1",
            status=SubscriptionStatus.ACTIVE,
            price_id="price_new",
            current_period_end="2026-02-01T00:00:00+00:00",
        )

        fields = reconcile_record(current, snapshot)

        assert fields["status"] == "active"
        assert fields["price_id"] == "price_new"
        assert fields["stripe_subscription_id"] == "sub_1"

    def test_missing_snapshot_fields_keep_stored_values(self):
        current = SubscriptionRecord(
            user_id="u1",
            stripe_customer_id="cus_1",
            stripe_subscription_id="sub_1",
            price_id="price_a",
        )
        snapshot = SubscriptionSnapshot(
            subscription_id=None, customer_id=None, status=SubscriptionStatus.PAST_DUE
        )

        fields = reconcile_record(current, snapshot)

        assert fields["stripe_customer_id"] == "cus_1"
        assert fields["stripe_subscription_id"] == "sub_1"
        assert fields["price_id"] == "price_a"
        assert fields["status"] == "past_due"

    def test_no_current_record_omits_missing_fields(self):
        snapshot = SubscriptionSnapshot(
            subscription_id="sub_1", customer_id="cus_1", status=SubscriptionStatus.ACTIVE
        )

        fields = reconcile_record(None, snapshot)

        assert fields == {
            "stripe_customer_id": "cus_1",
            "stripe_subscription_id": "sub_1",
            "status": "active",
        }


class TestApplySnapshot:
    def _row_state(self, fake_supabase):
        return [
            {k: v for k, v in row.items() if k not in ("updated_at", "created_at", "id")}
            for row in fake_supabase.rows()
        ]

    def test_idempotent(self, fake_supabase):
        snapshot = snapshot_from_subscription(subscription_payload(metadata={"user_id": "u1"}))

        apply_subscription_snapshot(snapshot)
        first = self._row_state(fake_supabase)
        apply_subscription_snapshot(snapshot)
        apply_subscription_snapshot(snapshot)

        assert self._row_state(fake_supabase) == first
        assert len(fake_supabase.rows()) == 1

    def test_arrival_order_decides_final_state(self, fake_supabase):
        trialing = snapshot_from_subscription(
            subscription_payload(status="trialing", metadata={"user_id": "u1"})
        )
        active = snapshot_from_subscription(
            subscription_payload(status="active", metadata={"user_id": "u1"})
        )

        apply_subscription_snapshot(active)
        apply_subscription_snapshot(trialing)
        assert fake_supabase.rows()[0]["status"] == "trialing"

        apply_subscription_snapshot(active)
        assert fake_supabase.rows()[0]["status"] == "active"

    def test_metadata_user_id_upserts_new_row(self, fake_supabase):
        result = apply_subscription_snapshot(
            snapshot_from_subscription(subscription_payload(metadata={"user_id": "u1"}))
        )

        assert result.matched is True
        assert result.attributed_by == "user_id"
        assert result.record.stripe_subscription_id == "sub_123"

    def test_explicit_user_id_takes_precedence(self, fake_supabase):
        result = apply_subscription_snapshot(
            snapshot_from_subscription(subscription_payload(metadata={"user_id": "u_meta"})),
            user_id="u_caller",
        )

        assert result.user_id == "u_caller"
        assert fake_supabase.rows()[0]["user_id"] == "u_caller"

    def test_falls_back_to_customer_id(self, fake_supabase):
        fake_supabase.insert_row(
            "subscriptions",
            {"user_id": "u1", "status": "incomplete", "stripe_customer_id": "cus_123"},
        )

        result = apply_subscription_snapshot(
            snapshot_from_subscription(subscription_payload(status="active", metadata={}))
        )

        assert result.matched is True
        assert result.attributed_by == "customer"
        assert result.user_id == "u1"
        row = fake_supabase.rows()[0]
        assert row["status"] == "active"
        assert row["stripe_subscription_id"] == "sub_123"
        assert row["user_id"] == "u1"

    def test_unmatched_customer_changes_nothing(self, fake_supabase):
        fake_supabase.insert_row(
            "subscriptions", {"user_id": "u2", "status": "active", "stripe_customer_id": "cus_other"}
        )

        result = apply_subscription_snapshot(
            snapshot_from_subscription(subscription_payload(status="canceled", customer="cus_unknown"))
        )

        assert result.matched is False
        assert len(fake_supabase.rows()) == 1
        assert fake_supabase.rows()[0]["status"] == "active"

    def test_no_user_and_no_customer(self, fake_supabase):
        result = apply_subscription_snapshot(
            SubscriptionSnapshot(subscription_id="sub_1", customer_id=None, status=SubscriptionStatus.ACTIVE)
        )
        assert result.matched is False

    def test_owner_path_is_a_single_upsert(self, fake_supabase):
        apply_subscription_snapshot(
            snapshot_from_subscription(subscription_payload(metadata={"user_id": "u1"}))
        )

        assert fake_supabase.operations == [("subscriptions", "upsert")]

    def test_customer_path_is_a_single_update(self, fake_supabase):
        fake_supabase.insert_row(
            "subscriptions",
            {"user_id": "u1", "status": "incomplete", "stripe_customer_id": "cus_123"},
        )

        apply_subscription_snapshot(snapshot_from_subscription(subscription_payload(metadata={})))

        assert fake_supabase.operations == [("subscriptions", "update")]

    def test_partial_snapshot_keeps_stored_columns(self, fake_supabase):
        fake_supabase.insert_row(
            "subscriptions",
            {
                "user_id": "u1",
                "status": "trialing",
                "price_id": "price_a",
                "current_period_end": "2026-01-01T00:00:00+00:00",
            },
        )

        apply_subscription_snapshot(
            SubscriptionSnapshot(
                subscription_id="sub_1", customer_id="cus_1", status=SubscriptionStatus.PAST_DUE
            ),
            user_id="u1",
        )

        row = fake_supabase.rows()[0]
        assert row["status"] == "past_due"
        assert row["price_id"] == "price_a"
        assert row["current_period_end"] == "2026-01-01T00:00:00+00:00"
