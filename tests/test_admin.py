from datetime import timedelta

import pytest

from core.exceptions import IllegalTransition, NotFoundError, ValidationError
from models.archive import ArchivedUserData
from models.audit_log import AuditLogEntry
from models.profile import Profile
from models.user import User
from services import admin as admin_service
from services.archive import archive_tenant


class TestSetSubscriptionState:
    def test_force_suspend_from_active(self, db, make_user, make_subscription, admin_user, now):
        user = make_user()
        make_subscription(user)

        record = admin_service.set_subscription_state(db, user.id, "suspended", "fraud review", admin_user.id, now)

        assert record.state == "suspended"
        assert record.archive_scheduled_at == now + timedelta(days=7)
        entry = db.query(AuditLogEntry).filter_by(event_type="admin_force_status").one()
        assert (entry.old_state, entry.new_state) == ("active", "suspended")
        assert entry.actor_id == admin_user.id
        assert entry.event_data["reason"] == "fraud review"

    def test_force_active_extends_lapsed_period(self, db, make_user, make_subscription, admin_user, now):
        user = make_user()
        make_subscription(
            user, state="expired", current_period_end=now - timedelta(days=2),
            grace_period_ends_at=now + timedelta(days=5),
        )

        record = admin_service.set_subscription_state(db, user.id, "active", None, admin_user.id, now)

        assert record.state == "active"
        assert record.current_period_end == now + timedelta(days=30)
        assert record.grace_period_ends_at is None

    def test_force_active_with_explicit_period_end(self, db, make_user, make_subscription, admin_user, now):
        user = make_user()
        make_subscription(user, state="suspended")

        record = admin_service.set_subscription_state(
            db, user.id, "active", "comp", admin_user.id, now, period_end=now + timedelta(days=90),
        )

        assert record.current_period_end == now + timedelta(days=90)

    def test_force_archive_runs_archival(self, db, make_user, make_subscription, admin_user, now):
        user = make_user()
        make_subscription(user, state="expired", grace_period_ends_at=now + timedelta(days=3))

        record = admin_service.set_subscription_state(db, user.id, "archived", "gdpr request", admin_user.id, now)

        assert record.state == "archived"
        assert db.query(ArchivedUserData).filter_by(original_user_id=user.id).count() == 1
        assert db.get(User, user.id).email.endswith("@anonymized.invalid")

    def test_backwards_step_rejected(self, db, make_user, make_subscription, admin_user, now):
        user = make_user()
        make_subscription(user, state="suspended")

        with pytest.raises(IllegalTransition):
            admin_service.set_subscription_state(db, user.id, "expired", None, admin_user.id, now)

    def test_cannot_leave_archived_without_restore(self, db, make_user, make_subscription, admin_user, now):
        user = make_user()
        make_subscription(user, state="archived")

        with pytest.raises(IllegalTransition):
            admin_service.set_subscription_state(db, user.id, "active", None, admin_user.id, now)

    def test_invalid_state(self, db, make_user, make_subscription, admin_user, now):
        user = make_user()
        make_subscription(user)

        with pytest.raises(ValidationError):
            admin_service.set_subscription_state(db, user.id, "deleted", None, admin_user.id, now)
        assert db.query(AuditLogEntry).count() == 0

    def test_missing_record(self, db, make_user, admin_user, now):
        user = make_user()
        with pytest.raises(NotFoundError):
            admin_service.set_subscription_state(db, user.id, "expired", None, admin_user.id, now)


class TestRestore:
    def _archive(self, db, make_user, make_subscription, now):
        user = make_user(email="restore-me@example.com", company_name="Acme Lda")
        record = make_subscription(user, state="suspended", archive_scheduled_at=now - timedelta(hours=1))
        archive_tenant(db, record, now)
        db.commit()
        return user, record

    def test_restore_brings_back_identity(self, db, make_user, make_subscription, admin_user, now):
        user, _ = self._archive(db, make_user, make_subscription, now)

        record = admin_service.restore_user(db, user.id, admin_user.id, now + timedelta(days=3))

        assert record.state == "expired"
        assert record.readonly_mode is True
        assert record.grace_period_ends_at == now + timedelta(days=10)
        restored = db.get(User, user.id)
        assert restored.email == "restore-me@example.com"
        assert db.query(Profile).filter_by(user_id=user.id).one().company_name == "Acme Lda"
        snapshot = db.query(ArchivedUserData).one()
        assert snapshot.can_restore is False
        assert snapshot.restored_at == now + timedelta(days=3)
        assert db.query(AuditLogEntry).filter_by(event_type="tenant_restored").count() == 1

    def test_restore_window_expired(self, db, make_user, make_subscription, admin_user, now):
        user, _ = self._archive(db, make_user, make_subscription, now)

        with pytest.raises(ValidationError):
            admin_service.restore_user(db, user.id, admin_user.id, now + timedelta(days=31))

    def test_snapshot_used_once(self, db, make_user, make_subscription, admin_user, now):
        user, _ = self._archive(db, make_user, make_subscription, now)
        admin_service.restore_user(db, user.id, admin_user.id, now)

        with pytest.raises(ValidationError):
            admin_service.restore_user(db, user.id, admin_user.id, now)

    def test_restore_requires_archived(self, db, make_user, make_subscription, admin_user, now):
        user = make_user()
        make_subscription(user)

        with pytest.raises(ValidationError):
            admin_service.restore_user(db, user.id, admin_user.id, now)


class TestAdminRoles:
    def test_add_by_email_and_list(self, db, make_user, admin_user, now):
        user = make_user(email="new-admin@example.com")

        admin_service.add_admin(db, actor_id=admin_user.id, now=now, email="New-Admin@example.com")

        assert admin_service.is_admin(db, user.id)
        ids = [u.id for u, _ in admin_service.list_admins(db)]
        assert ids == [admin_user.id, user.id]
        entry = db.query(AuditLogEntry).filter_by(event_type="admin_added").one()
        assert entry.actor_id == admin_user.id

    def test_add_is_idempotent(self, db, make_user, admin_user, now):
        user = make_user()
        admin_service.add_admin(db, actor_id=admin_user.id, now=now, target_user_id=user.id)
        admin_service.add_admin(db, actor_id=admin_user.id, now=now, target_user_id=user.id)

        assert db.query(AuditLogEntry).filter_by(event_type="admin_added").count() == 1

    def test_add_unknown_user(self, db, admin_user, now):
        with pytest.raises(NotFoundError):
            admin_service.add_admin(db, actor_id=admin_user.id, now=now, email="ghost@example.com")

    def test_remove(self, db, make_user, admin_user, now):
        user = make_user()
        admin_service.add_admin(db, actor_id=admin_user.id, now=now, target_user_id=user.id)

        admin_service.remove_admin(db, target_user_id=user.id, actor_id=admin_user.id, now=now)

        assert not admin_service.is_admin(db, user.id)
        assert db.query(AuditLogEntry).filter_by(event_type="admin_removed").count() == 1

    def test_cannot_remove_self(self, db, admin_user, now):
        with pytest.raises(ValidationError):
            admin_service.remove_admin(db, target_user_id=admin_user.id, actor_id=admin_user.id, now=now)

    def test_remove_non_admin(self, db, make_user, admin_user, now):
        user = make_user()
        with pytest.raises(NotFoundError):
            admin_service.remove_admin(db, target_user_id=user.id, actor_id=admin_user.id, now=now)
