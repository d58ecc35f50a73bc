from datetime import timedelta

import pytest

from core.exceptions import IllegalTransition, NotFoundError, ValidationError
from models.audit_log import AuditLogEntry
from models.profile import Profile
from models.subscription import SubscriptionRecord
from models.usage import UsageCounters
from services.billing import activate_subscription, apply_billing_event
from services.evaluator import evaluate
from services.transitions import run_transition_job


class TestApplyBillingEvent:
    def test_payment_reactivates_suspended(self, db, make_user, make_subscription, now):
        record = make_subscription(
            make_user(), state="suspended", stripe_subscription_id="sub_1", readonly_mode=True,
            current_period_end=now - timedelta(days=9),
            grace_period_ends_at=now - timedelta(days=2), archive_scheduled_at=now + timedelta(days=5),
        )

        apply_billing_event(
            db, subscription_id="sub_1", new_status="active",
            period_end=now + timedelta(days=30), now=now,
        )

        db.refresh(record)
        assert record.state == "active"
        assert record.readonly_mode is False
        assert record.grace_period_ends_at is None
        assert record.archive_scheduled_at is None
        assert record.current_period_end == now + timedelta(days=30)
        types = [e.event_type for e in db.query(AuditLogEntry).order_by(AuditLogEntry.id)]
        assert types == ["state_changed", "billing_event"]

    def test_payment_without_period_end_opens_new_period(self, db, make_user, make_subscription, now):
        record = make_subscription(
            make_user(), state="expired", stripe_subscription_id="sub_6", readonly_mode=True,
            current_period_end=now - timedelta(days=3), grace_period_ends_at=now + timedelta(days=4),
        )

        apply_billing_event(db, subscription_id="sub_6", new_status="active", period_end=None, now=now)

        db.refresh(record)
        assert record.state == "active"
        assert record.current_period_end == now + timedelta(days=30)
        assert evaluate(record, None, now).state == "active"

        summary = run_transition_job(db, now + timedelta(minutes=1))
        db.refresh(record)
        assert summary.expired == 0
        assert record.state == "active"

    def test_payment_with_stale_period_end_uses_billing_period(self, db, make_user, make_subscription, now):
        record = make_subscription(
            make_user(), state="suspended", stripe_subscription_id="sub_7", billing_period="annual",
            current_period_end=now - timedelta(days=10), archive_scheduled_at=now + timedelta(days=4),
        )

        apply_billing_event(
            db, subscription_id="sub_7", new_status="active",
            period_end=now - timedelta(days=10), now=now,
        )

        db.refresh(record)
        assert record.current_period_end == now + timedelta(days=365)

    def test_renewal_while_active_extends_period(self, db, make_user, make_subscription, now):
        record = make_subscription(make_user(), stripe_subscription_id="sub_2")

        apply_billing_event(
            db, subscription_id="sub_2", new_status="active",
            period_end=now + timedelta(days=40), now=now,
        )

        db.refresh(record)
        assert record.state == "active"
        assert record.current_period_end == now + timedelta(days=40)
        assert db.query(AuditLogEntry).filter_by(event_type="state_changed").count() == 0

    @pytest.mark.parametrize("status", ["past_due", "unpaid", "canceled", "incomplete_expired"])
    def test_lapsed_status_expires_active(self, db, make_user, make_subscription, now, status):
        record = make_subscription(make_user(), stripe_subscription_id="sub_3")

        apply_billing_event(db, subscription_id="sub_3", new_status=status, period_end=None, now=now)

        db.refresh(record)
        assert record.state == "expired"
        assert record.status == status
        assert record.grace_period_ends_at == now + timedelta(days=7)

    def test_lapsed_status_keeps_suspended(self, db, make_user, make_subscription, now):
        record = make_subscription(
            make_user(), state="suspended", stripe_subscription_id="sub_4",
            archive_scheduled_at=now + timedelta(days=3),
        )

        apply_billing_event(db, subscription_id="sub_4", new_status="canceled", period_end=None, now=now)

        db.refresh(record)
        assert record.state == "suspended"
        assert record.archive_scheduled_at == now + timedelta(days=3)

    def test_archived_never_reactivated(self, db, make_user, make_subscription, now):
        record = make_subscription(make_user(), state="archived", stripe_subscription_id="sub_5")

        apply_billing_event(
            db, subscription_id="sub_5", new_status="active",
            period_end=now + timedelta(days=30), now=now,
        )

        db.refresh(record)
        assert record.state == "archived"
        assert record.status == "active"
        assert db.query(AuditLogEntry).filter_by(event_type="billing_event").count() == 1

    def test_unknown_subscription(self, db, now):
        with pytest.raises(NotFoundError):
            apply_billing_event(db, subscription_id="sub_missing", new_status="active", period_end=None, now=now)

    def test_profile_status_follows_lapse(self, db, make_user, make_subscription, now):
        user = make_user()
        make_subscription(user, stripe_subscription_id="sub_6")

        apply_billing_event(db, subscription_id="sub_6", new_status="unpaid", period_end=None, now=now)

        assert db.query(Profile).filter_by(user_id=user.id).one().subscription_status == "inactive"


class TestActivateSubscription:
    def test_creates_record_from_plan(self, db, make_user, now):
        user = make_user()

        record = activate_subscription(
            db, user_id=user.id, plan_code="expert", now=now,
            stripe_customer_id="cus_1", stripe_subscription_id="sub_new",
        )

        assert record.state == "active"
        assert record.plan_name == "EXPERT"
        assert record.campaign_limit is None
        assert record.store_limit == 4
        assert record.current_period_end == now + timedelta(days=30)
        assert record.features_enabled["product_research"] is True
        counters = db.query(UsageCounters).filter_by(user_id=user.id).one()
        assert (counters.campaigns_limit, counters.stores_limit) == (None, 4)
        profile = db.query(Profile).filter_by(user_id=user.id).one()
        assert profile.subscription_plan == "expert"
        assert db.query(AuditLogEntry).filter_by(event_type="subscription_activated").count() == 1

    def test_annual_period(self, db, make_user, now):
        user = make_user()
        record = activate_subscription(db, user_id=user.id, plan_code="basic", billing_period="annual", now=now)
        assert record.current_period_end == now + timedelta(days=365)

    def test_upgrades_expired_record(self, db, make_user, make_subscription, now):
        user = make_user()
        make_subscription(user, plan_code="basic", state="expired", grace_period_ends_at=now + timedelta(days=2))

        record = activate_subscription(db, user_id=user.id, plan_code="business", now=now)

        db.refresh(record)
        assert db.query(SubscriptionRecord).count() == 1
        assert record.state == "active"
        assert record.plan_code == "business"
        assert record.grace_period_ends_at is None

    def test_archived_record_cannot_be_activated(self, db, make_user, make_subscription, now):
        user = make_user()
        make_subscription(user, state="archived")

        with pytest.raises(IllegalTransition):
            activate_subscription(db, user_id=user.id, plan_code="basic", now=now)

    @pytest.mark.parametrize("plan_code", ["platinum", "trial", ""])
    def test_unknown_plan(self, db, make_user, now, plan_code):
        user = make_user()
        with pytest.raises(ValidationError):
            activate_subscription(db, user_id=user.id, plan_code=plan_code, now=now)

    def test_unknown_user(self, db, now):
        with pytest.raises(NotFoundError):
            activate_subscription(db, user_id=999, plan_code="basic", now=now)
