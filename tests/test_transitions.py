from datetime import timedelta
from unittest.mock import patch

from models.archive import ArchivedUserData
from models.audit_log import AuditLogEntry
from models.subscription import SubscriptionRecord
from models.usage import UsageCounters
from models.user import User
from services import archive as archive_service
from services import transitions
from services.transitions import run_transition_job


class TestTransitionJob:
    def test_expires_lapsed_subscription(self, db, make_user, make_subscription, now):
        record = make_subscription(make_user(), current_period_end=now - timedelta(minutes=5))

        summary = run_transition_job(db, now)

        assert summary.expired == 1
        db.refresh(record)
        assert record.state == "expired"
        assert record.grace_period_ends_at == now + timedelta(days=7)

    def test_rerun_at_same_instant_is_noop(self, db, make_user, make_subscription, now):
        make_subscription(make_user(), current_period_end=now - timedelta(minutes=5))
        run_transition_job(db, now)
        entries = db.query(AuditLogEntry).count()

        summary = run_transition_job(db, now)

        assert (summary.expired, summary.suspended, summary.archived) == (0, 0, 0)
        assert db.query(AuditLogEntry).count() == entries

    def test_one_step_per_run(self, db, make_user, make_subscription, now):
        # Period ended long ago: the job still only moves one state forward per run
        record = make_subscription(make_user(), current_period_end=now - timedelta(days=40))

        run_transition_job(db, now)
        db.refresh(record)
        assert record.state == "expired"

    def test_progression_is_monotonic(self, db, make_user, make_subscription, now):
        record = make_subscription(make_user(), current_period_end=now - timedelta(minutes=1))
        seen = []
        for days in (0, 8, 16):
            run_transition_job(db, now + timedelta(days=days))
            db.refresh(record)
            seen.append(record.state)

        assert seen == ["expired", "suspended", "archived"]

    def test_archive_anonymizes_and_snapshots(self, db, make_user, make_subscription, now):
        user = make_user(email="keepme@example.com")
        make_subscription(
            user, state="suspended",
            grace_period_ends_at=now - timedelta(days=8), archive_scheduled_at=now - timedelta(hours=1),
        )

        summary = run_transition_job(db, now)

        assert summary.archived == 1
        db.refresh(user)
        assert user.email == f"archived-{user.id}@anonymized.invalid"
        assert user.profile.full_name == archive_service.ANONYMIZED_NAME
        snapshot = db.query(ArchivedUserData).one()
        assert snapshot.can_restore is True
        assert snapshot.restoration_expires_at == now + timedelta(days=30)
        assert b"keepme@example.com" not in snapshot.encrypted_snapshot
        event_types = {e.event_type for e in db.query(AuditLogEntry).all()}
        assert {"state_changed", "tenant_archived"} <= event_types

    def test_archive_without_key_leaves_tenant_suspended(self, db, make_user, make_subscription, now, monkeypatch):
        from core.config import settings
        monkeypatch.setattr(settings, "ARCHIVE_ENCRYPTION_KEY", "")
        user = make_user(email="plain@example.com")
        record = make_subscription(
            user, state="suspended",
            grace_period_ends_at=now - timedelta(days=8), archive_scheduled_at=now - timedelta(hours=1),
        )

        summary = run_transition_job(db, now)

        assert summary.archived == 0
        assert len(summary.errors) == 1
        db.refresh(record)
        assert record.state == "suspended"
        assert db.get(User, user.id).email == "plain@example.com"
        assert db.query(ArchivedUserData).count() == 0

    def test_one_failure_does_not_stop_batch(self, db, make_user, make_subscription, now):
        first = make_subscription(make_user(), current_period_end=now - timedelta(minutes=5))
        second = make_subscription(make_user(), current_period_end=now - timedelta(minutes=5))

        real_advance = transitions._advance

        def _flaky(db_, record, now_):
            if record.id == first.id:
                raise RuntimeError("database hiccup")
            return real_advance(db_, record, now_)

        with patch("services.transitions._advance", side_effect=_flaky):
            summary = run_transition_job(db, now)

        assert summary.expired == 1
        assert summary.errors[0]["subscription_id"] == first.id
        assert db.get(SubscriptionRecord, first.id).state == "active"
        assert db.get(SubscriptionRecord, second.id).state == "expired"

    def test_archived_records_are_skipped(self, db, make_user, make_subscription, now):
        make_subscription(make_user(), state="archived", current_period_end=now - timedelta(days=60))

        summary = run_transition_job(db, now)

        assert summary.errors == []
        assert db.query(AuditLogEntry).count() == 0


class TestUsageReset:
    def test_resets_campaigns_when_due(self, db, make_user, now):
        user = make_user()
        counters = db.query(UsageCounters).filter_by(user_id=user.id).one()
        counters.campaigns_used = 12
        counters.stores_used = 2
        counters.reset_at = now - timedelta(minutes=1)
        db.commit()

        summary = run_transition_job(db, now)

        assert summary.usage_reset == 1
        db.refresh(counters)
        assert counters.campaigns_used == 0
        assert counters.stores_used == 2
        assert counters.reset_at == now + timedelta(days=30)

    def test_not_due_counters_untouched(self, db, make_user, now):
        user = make_user()
        counters = db.query(UsageCounters).filter_by(user_id=user.id).one()
        counters.campaigns_used = 4
        db.commit()

        assert run_transition_job(db, now).usage_reset == 0
        db.refresh(counters)
        assert counters.campaigns_used == 4
