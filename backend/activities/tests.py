from unittest.mock import patch

from django.db import DatabaseError, connection
from django.test import SimpleTestCase, TestCase, override_settings
from django.test.utils import CaptureQueriesContext
from rest_framework.test import APIClient

from activities.models import Activity, CaseActivityRegistration, UserActivityRegistration
from activities.services import counter
from activities.services import registrations as registration_service
from activities.status_catalog import (
    RegistrationStatus,
    is_known_registration_status,
    normalize_registration_status,
)
from api.exceptions import NotFound, PersistenceFailure, ValidationFailed

REVIEWER_AUTH = dict(
    AUTH_ENABLED=False,
    DEV_AUTH_ENABLED=True,
    DEV_AUTH_USER_ID="3",
    DEV_AUTH_ROLES=["STAFF"],
    DEV_AUTH_PERMISSIONS=[],
    DEBUG=True,
)
VIEWER_AUTH = dict(REVIEWER_AUTH, DEV_AUTH_ROLES=["VIEWER"])


class RegistrationStatusCatalogTests(SimpleTestCase):
    def test_mixed_spellings(self) -> None:
        cases = {
            "Approved": RegistrationStatus.APPROVED,
            "approved": RegistrationStatus.APPROVED,
            "已同意": RegistrationStatus.APPROVED,
            "cancelled": RegistrationStatus.CANCELLED,
            "Cancelled": RegistrationStatus.CANCELLED,
            "canceled": RegistrationStatus.CANCELLED,
            "不同意": RegistrationStatus.CANCELLED,
            "registered": RegistrationStatus.PENDING,
            "Rejected": RegistrationStatus.REJECTED,
            None: RegistrationStatus.PENDING,
            "???": RegistrationStatus.PENDING,
        }
        for raw, expected in cases.items():
            with self.subTest(raw=raw):
                self.assertEqual(normalize_registration_status(raw), expected)

    def test_idempotent(self) -> None:
        for raw in ["Approved", "已取消", "registered", "Rejected", ""]:
            with self.subTest(raw=raw):
                once = normalize_registration_status(raw)
                self.assertEqual(normalize_registration_status(once), once)
                self.assertEqual(normalize_registration_status(once.value), once)

    def test_known_statuses(self) -> None:
        for raw in ["Approved", "approved", "canceled", "不同意", "registered", " Rejected "]:
            with self.subTest(raw=raw):
                self.assertTrue(is_known_registration_status(raw))
        for raw in ["Aproved", "", None, "???"]:
            with self.subTest(raw=raw):
                self.assertFalse(is_known_registration_status(raw))

    def test_participant_delta(self) -> None:
        delta = registration_service.participant_delta
        self.assertEqual(delta("Pending", "Approved", 3), 3)
        self.assertEqual(delta("Approved", "cancelled", 3), -3)
        self.assertEqual(delta("Approved", "Approved", 3), 0)
        self.assertEqual(delta("Approved", "Rejected", 3), 0)
        self.assertEqual(delta("Cancelled", "Cancelled", 3), 0)
        self.assertEqual(delta("Rejected", "Approved", 1), 1)


class CounterAdjusterTests(TestCase):
    def test_interleaved_deltas_apply_to_stored_value(self) -> None:
        activity = Activity.objects.create(activity_name="Harvest fair", current_participants=10)

        # Two reviewers both loaded 10. Writing back computed values loses one change.
        stale_a = Activity.objects.get(activity_id=activity.activity_id)
        stale_b = Activity.objects.get(activity_id=activity.activity_id)
        stale_a.current_participants += 3
        stale_a.save(update_fields=["current_participants"])
        stale_b.current_participants -= 2
        stale_b.save(update_fields=["current_participants"])
        activity.refresh_from_db()
        self.assertEqual(activity.current_participants, 8)

        Activity.objects.filter(activity_id=activity.activity_id).update(current_participants=10)
        stale_a = Activity.objects.get(activity_id=activity.activity_id)
        stale_b = Activity.objects.get(activity_id=activity.activity_id)

        counter.adjust(stale_a.activity_id, 3)
        counter.adjust(stale_b.activity_id, -2)

        activity.refresh_from_db()
        self.assertEqual(activity.current_participants, 11)
        self.assertEqual(stale_b.current_participants, 10)

    def test_adjust_is_a_single_update(self) -> None:
        activity = Activity.objects.create(current_participants=4)

        with CaptureQueriesContext(connection) as ctx:
            counter.adjust(activity.activity_id, 2)

        self.assertEqual(len(ctx.captured_queries), 1)
        self.assertTrue(ctx.captured_queries[0]["sql"].upper().startswith("UPDATE"))

    def test_clamps_at_zero(self) -> None:
        activity = Activity.objects.create(current_participants=1)

        counter.adjust(activity.activity_id, -3)

        activity.refresh_from_db()
        self.assertEqual(activity.current_participants, 0)

    def test_null_count_treated_as_zero(self) -> None:
        activity = Activity.objects.create(current_participants=None)

        counter.adjust(activity.activity_id, 2)

        activity.refresh_from_db()
        self.assertEqual(activity.current_participants, 2)

    def test_sequence_matches_clamped_sum(self) -> None:
        activity = Activity.objects.create(current_participants=5)
        for delta in (2, -1, 4, -3, 1):
            counter.adjust(activity.activity_id, delta)

        activity.refresh_from_db()
        self.assertEqual(activity.current_participants, 8)

    def test_zero_delta_is_noop(self) -> None:
        with CaptureQueriesContext(connection) as ctx:
            self.assertEqual(counter.adjust(12345, 0), 0)
        self.assertEqual(len(ctx.captured_queries), 0)

    def test_missing_activity(self) -> None:
        with self.assertRaises(NotFound):
            counter.adjust(12345, 1)

    def test_database_error_wrapped(self) -> None:
        activity = Activity.objects.create(current_participants=1)

        with patch("django.db.models.query.QuerySet.update", side_effect=DatabaseError("locked")):
            with self.assertRaises(PersistenceFailure):
                counter.adjust(activity.activity_id, 1)


class RegistrationCoordinatorTests(TestCase):
    def setUp(self) -> None:
        self.activity = Activity.objects.create(activity_name="Picnic", current_participants=5)

    def test_public_approval_then_cancellation(self) -> None:
        registration = UserActivityRegistration.objects.create(
            user_id=8,
            activity=self.activity,
            status="Pending",
            number_of_companions=1,
        )

        _, delta = registration_service.set_status("public", registration.registration_id, "Approved")
        self.activity.refresh_from_db()
        self.assertEqual(delta, 2)
        self.assertEqual(self.activity.current_participants, 7)

        _, delta = registration_service.set_status("public", registration.registration_id, "Cancelled")
        self.activity.refresh_from_db()
        self.assertEqual(delta, -2)
        self.assertEqual(self.activity.current_participants, 5)

    def test_lowercase_cancel_from_legacy_ui_still_decrements(self) -> None:
        registration = CaseActivityRegistration.objects.create(
            case_id=4, activity=self.activity, status="Approved"
        )

        saved, delta = registration_service.set_status("case", registration.registration_id, "cancelled")

        self.assertEqual(delta, -1)
        self.assertEqual(saved.status, RegistrationStatus.CANCELLED.value)
        self.activity.refresh_from_db()
        self.assertEqual(self.activity.current_participants, 4)

    def test_reapproving_does_not_double_count(self) -> None:
        registration = CaseActivityRegistration.objects.create(
            case_id=4, activity=self.activity, status="已同意"
        )

        _, delta = registration_service.set_status("case", registration.registration_id, "Approved")

        self.assertEqual(delta, 0)
        self.activity.refresh_from_db()
        self.assertEqual(self.activity.current_participants, 5)

    def test_repeat_approval_counts_party_once(self) -> None:
        registration = UserActivityRegistration.objects.create(
            user_id=8,
            activity=self.activity,
            status="Pending",
            number_of_companions=1,
        )

        _, first = registration_service.set_status("public", registration.registration_id, "Approved")
        _, second = registration_service.set_status("public", registration.registration_id, "approved")

        self.assertEqual((first, second), (2, 0))
        self.activity.refresh_from_db()
        self.assertEqual(self.activity.current_participants, 7)

    def test_old_status_read_under_row_lock(self) -> None:
        registration = CaseActivityRegistration.objects.create(
            case_id=4, activity=self.activity, status="Pending"
        )
        manager = CaseActivityRegistration.objects

        with patch.object(manager, "select_for_update", wraps=manager.select_for_update) as lock:
            registration_service.set_status("case", registration.registration_id, "Approved")

        lock.assert_called_once_with()

    def test_rejection_of_pending_leaves_count(self) -> None:
        registration = CaseActivityRegistration.objects.create(
            case_id=4, activity=self.activity, status="registered"
        )

        saved, delta = registration_service.set_status("case", registration.registration_id, "Rejected")

        self.assertEqual(delta, 0)
        registration.refresh_from_db()
        self.assertEqual(registration.status, RegistrationStatus.REJECTED.value)

    def test_missing_registration(self) -> None:
        with self.assertRaises(NotFound):
            registration_service.set_status("case", 999, "Approved")

    def test_missing_activity_leaves_registration_untouched(self) -> None:
        registration = CaseActivityRegistration.objects.create(
            case_id=4, activity_id=4242, status="Pending"
        )

        with self.assertRaises(NotFound):
            registration_service.set_status("case", registration.registration_id, "Approved")

        registration.refresh_from_db()
        self.assertEqual(registration.status, "Pending")

    def test_unknown_kind(self) -> None:
        with self.assertRaises(ValidationFailed):
            registration_service.set_status("volunteer", 1, "Approved")

    def test_counter_failure_keeps_saved_status(self) -> None:
        registration = CaseActivityRegistration.objects.create(
            case_id=4, activity=self.activity, status="Pending"
        )

        with patch(
            "activities.services.registrations.counter.adjust",
            side_effect=PersistenceFailure("Could not adjust participants."),
        ):
            with self.assertRaises(PersistenceFailure):
                registration_service.set_status("case", registration.registration_id, "Approved")

        registration.refresh_from_db()
        self.assertEqual(registration.status, RegistrationStatus.APPROVED.value)
        self.activity.refresh_from_db()
        self.assertEqual(self.activity.current_participants, 5)

    def test_listings_fall_back_to_placeholder_names(self) -> None:
        CaseActivityRegistration.objects.create(case_id=4, activity=self.activity, status="registered")
        UserActivityRegistration.objects.create(
            user_id=8, activity=self.activity, status="Approved", number_of_companions=None
        )

        cases, case_warnings = registration_service.list_case_registrations()
        users, user_warnings = registration_service.list_public_registrations()

        self.assertEqual(cases[0]["case_name"], "Unknown case")
        self.assertEqual(cases[0]["activity_name"], "Picnic")
        self.assertEqual(cases[0]["status"], "Pending")
        self.assertIn("case_directory_unavailable", case_warnings)
        self.assertEqual(users[0]["user_name"], "User 8")
        self.assertEqual(users[0]["number_of_companions"], 0)
        self.assertIn("user_directory_unavailable", user_warnings)


class RegistrationApiTests(TestCase):
    def setUp(self) -> None:
        self.client = APIClient()
        self.activity = Activity.objects.create(activity_name="Picnic", current_participants=5)

    @override_settings(**REVIEWER_AUTH)
    def test_approve_public_registration(self) -> None:
        registration = UserActivityRegistration.objects.create(
            user_id=8, activity=self.activity, status="Pending", number_of_companions=2
        )

        response = self.client.put(
            f"/api/v1/activities/registrations/user/{registration.registration_id}/status",
            {"status": "Approved"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["participant_delta"], 3)
        self.activity.refresh_from_db()
        self.assertEqual(self.activity.current_participants, 8)

    @override_settings(**REVIEWER_AUTH)
    def test_status_required(self) -> None:
        registration = CaseActivityRegistration.objects.create(
            case_id=1, activity=self.activity, status="Pending"
        )

        response = self.client.put(
            f"/api/v1/activities/registrations/case/{registration.registration_id}/status",
            {},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("status", response.json()["errors"])

    @override_settings(**REVIEWER_AUTH)
    def test_misspelled_status_is_rejected(self) -> None:
        registration = UserActivityRegistration.objects.create(
            user_id=8, activity=self.activity, status="Approved", number_of_companions=2
        )

        response = self.client.put(
            f"/api/v1/activities/registrations/user/{registration.registration_id}/status",
            {"status": "Aproved"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("status", response.json()["errors"])
        registration.refresh_from_db()
        self.assertEqual(registration.status, "Approved")
        self.activity.refresh_from_db()
        self.assertEqual(self.activity.current_participants, 5)

    @override_settings(**REVIEWER_AUTH)
    def test_legacy_spelling_is_accepted(self) -> None:
        registration = CaseActivityRegistration.objects.create(
            case_id=1, activity=self.activity, status="Approved"
        )

        response = self.client.put(
            f"/api/v1/activities/registrations/case/{registration.registration_id}/status",
            {"status": "cancelled"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "Cancelled")
        self.assertEqual(response.json()["participant_delta"], -1)

    @override_settings(**REVIEWER_AUTH)
    def test_missing_registration_is_404(self) -> None:
        response = self.client.put(
            "/api/v1/activities/registrations/case/999/status",
            {"status": "Approved"},
            format="json",
        )

        self.assertEqual(response.status_code, 404)

    @override_settings(**VIEWER_AUTH)
    def test_viewer_can_list_but_not_review(self) -> None:
        registration = CaseActivityRegistration.objects.create(
            case_id=1, activity=self.activity, status="Pending"
        )

        listing = self.client.get("/api/v1/activities/registrations/case")
        self.assertEqual(listing.status_code, 200)
        self.assertEqual(listing.json()["count"], 1)

        response = self.client.put(
            f"/api/v1/activities/registrations/case/{registration.registration_id}/status",
            {"status": "Approved"},
            format="json",
        )
        self.assertEqual(response.status_code, 403)
