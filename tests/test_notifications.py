"""
Tests for notification preferences, audit hashing and stored-document decoding
"""
from datetime import datetime

import pytest
import pytz

from stablehub.errors import DocumentDecodeError
from stablehub.models.models import Notification, UserNotificationPreference
from stablehub.schemas.routines import decode_progress, decode_steps
from stablehub.services.audit import compute_diff, create_audit_log
from stablehub.services.notifications import is_quiet_hours, send_routine_notification

from conftest import auth_headers


STOCKHOLM = pytz.timezone("Europe/Stockholm")


class TestQuietHours:
    pref = {"quiet_hours": {"start": "22:00", "end": "07:00", "timezone": "Europe/Stockholm"}}

    def test_spanning_midnight(self):
        assert is_quiet_hours(self.pref, now=STOCKHOLM.localize(datetime(2025, 1, 6, 23, 30))) is True
        assert is_quiet_hours(self.pref, now=STOCKHOLM.localize(datetime(2025, 1, 6, 6, 0))) is True
        assert is_quiet_hours(self.pref, now=STOCKHOLM.localize(datetime(2025, 1, 6, 12, 0))) is False

    def test_no_preference(self):
        assert is_quiet_hours(None) is False
        assert is_quiet_hours({"quiet_hours": {"start": "22:00"}}) is False

    def test_bad_timezone(self):
        assert is_quiet_hours({"quiet_hours": {"start": "22:00", "end": "07:00", "timezone": "Mars/Olympus"}}) is False


class TestRoutineNotifications:
    def test_push_disabled_by_preference(self, factory):
        user = factory.user()
        factory.db.add(UserNotificationPreference(user_id=user.id, push=False, email=True))
        factory.db.commit()

        created = send_routine_notification(factory.db, [user.id], "assigned", {"id": "r1"})

        assert created == 1
        rows = factory.db.query(Notification).filter(Notification.user_id == user.id).all()
        assert [(n.channel, n.template_key) for n in rows] == [("email", "routine_assigned")]
        assert rows[0].payload_json == {"type": "assigned", "routine": {"id": "r1"}}

    def test_duplicate_recipients_notified_once(self, factory):
        user = factory.user()
        assert send_routine_notification(factory.db, [user.id, user.id, None], "cancelled", {}) == 2


class TestAudit:
    def test_integrity_hash(self, factory):
        entry = create_audit_log(factory.db, "routine_instance", "abc", "START", actor_id="u1", source="api")
        assert len(entry.integrity_hash) == 64
        assert entry.source == "api"

    def test_compute_diff(self):
        assert compute_diff({"a": 1, "b": 2}, {"a": 1, "b": 3, "c": 4}) == {
            "b": {"before": 2, "after": 3},
            "c": {"before": None, "after": 4},
        }


class TestDocumentDecoding:
    def test_malformed_steps(self):
        with pytest.raises(DocumentDecodeError) as exc:
            decode_steps([{"name": "missing id and order"}], "tmpl-1")
        assert exc.value.kind == "routine_template.steps"
        assert exc.value.identifier == "tmpl-1"

    def test_steps_sorted_by_order(self):
        steps = decode_steps([
            {"id": "b", "order": 2, "name": "Second"},
            {"id": "a", "order": 1, "name": "First"},
        ])
        assert [s.id for s in steps] == ["a", "b"]

    def test_malformed_progress(self):
        with pytest.raises(DocumentDecodeError):
            decode_progress({"steps_total": "many"}, "inst-1")

    def test_malformed_progress_is_a_generic_500(self, client, factory, org_setup):
        template = factory.template(org_setup["org"], org_setup["stable"])
        instance = factory.instance(template, org_setup["stable"], progress={"step_progress": "broken"})

        response = client.get(f"/routines/instances/{instance.id}", headers=auth_headers(org_setup["groom"]))

        assert response.status_code == 500
        assert response.json()["detail"] == "Internal server error"
        assert "broken" not in response.text
