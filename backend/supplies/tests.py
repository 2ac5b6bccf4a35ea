from datetime import timedelta
from unittest.mock import patch

from django.db import DatabaseError
from django.test import SimpleTestCase, TestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIClient

from api.exceptions import InvalidTransition, NotFound, PersistenceFailure
from supplies.models import DistributionBatch, SupplyMatch, SupplyNeed
from supplies.services import batches as batch_service
from supplies.services import matches as match_service
from supplies.services import need_workflow
from supplies.status_catalog import (
    BatchStatus,
    NeedStatus,
    normalize_batch_status,
    normalize_need_status,
)

STAFF_AUTH = dict(
    AUTH_ENABLED=False,
    DEV_AUTH_ENABLED=True,
    DEV_AUTH_USER_ID="3",
    DEV_AUTH_ROLES=["STAFF"],
    DEV_AUTH_PERMISSIONS=[],
    DEBUG=True,
)
SUPERVISOR_AUTH = dict(STAFF_AUTH, DEV_AUTH_USER_ID="5", DEV_AUTH_ROLES=["SUPERVISOR"])
VIEWER_AUTH = dict(STAFF_AUTH, DEV_AUTH_ROLES=["VIEWER"])


def _need(status=NeedStatus.PENDING.value, batch=None, **kwargs) -> SupplyNeed:
    defaults = {"case_id": 1, "supply_id": 1, "quantity": 2, "apply_date": timezone.now()}
    defaults.update(kwargs)
    return SupplyNeed.objects.create(status=status, batch=batch, **defaults)


def _batch(status=BatchStatus.PENDING.value, **kwargs) -> DistributionBatch:
    defaults = {
        "distribution_date": timezone.now(),
        "case_count": 2,
        "total_supply_items": 4,
        "created_by_worker_id": 3,
    }
    defaults.update(kwargs)
    return DistributionBatch.objects.create(status=status, **defaults)


class StatusCatalogTests(SimpleTestCase):
    def test_legacy_need_spellings_map_to_canonical(self) -> None:
        cases = {
            "待審核": NeedStatus.PENDING,
            "批准": NeedStatus.APPROVED,
            "未領取": NeedStatus.APPROVED,
            "不批准": NeedStatus.REJECTED,
            "已領取": NeedStatus.COLLECTED,
            "等待主管審核": NeedStatus.PENDING_SUPER,
            " Approved ": NeedStatus.APPROVED,
            "COMPLETED": NeedStatus.COLLECTED,
            "pending-super": NeedStatus.PENDING_SUPER,
        }
        for raw, expected in cases.items():
            with self.subTest(raw=raw):
                self.assertEqual(normalize_need_status(raw), expected)

    def test_unknown_or_empty_need_status_is_pending(self) -> None:
        for raw in (None, "", "???", 17):
            with self.subTest(raw=raw):
                self.assertEqual(normalize_need_status(raw), NeedStatus.PENDING)

    def test_batch_spellings(self) -> None:
        self.assertEqual(normalize_batch_status("等待批准"), BatchStatus.PENDING)
        self.assertEqual(normalize_batch_status("已完成"), BatchStatus.APPROVED)
        self.assertEqual(normalize_batch_status("已拒絕"), BatchStatus.REJECTED)
        self.assertEqual(normalize_batch_status("whatever"), BatchStatus.PENDING)

    def test_normalize_is_idempotent(self) -> None:
        inputs = ["待審核", "批准", "已領取", "等待主管審核", "Collected", "bogus", None]
        for raw in inputs:
            with self.subTest(raw=raw):
                once = normalize_need_status(raw)
                self.assertEqual(normalize_need_status(once), once)
                self.assertEqual(normalize_need_status(once.value), once)
        for raw in ["已批准", "已拒絕", "pending", None]:
            with self.subTest(raw=raw):
                once = normalize_batch_status(raw)
                self.assertEqual(normalize_batch_status(once), once)


class NeedWorkflowTests(TestCase):
    def test_approve_from_pending(self) -> None:
        need = _need()

        updated = need_workflow.approve(need.need_id)

        self.assertEqual(updated.status, NeedStatus.APPROVED.value)
        need.refresh_from_db()
        self.assertEqual(need.status, NeedStatus.APPROVED.value)

    def test_reject_from_legacy_pending_spelling(self) -> None:
        need = _need(status="待審核")

        need_workflow.reject(need.need_id)

        need.refresh_from_db()
        self.assertEqual(need.status, NeedStatus.REJECTED.value)

    def test_confirm_requires_approved(self) -> None:
        need = _need(status=NeedStatus.PENDING.value)

        with self.assertRaises(InvalidTransition) as ctx:
            need_workflow.confirm(need.need_id)

        self.assertEqual(ctx.exception.message, "Only approved requests can be confirmed.")
        need.refresh_from_db()
        self.assertEqual(need.status, NeedStatus.PENDING.value)

    def test_full_happy_path_sets_pickup_date(self) -> None:
        need = _need()

        need_workflow.approve(need.need_id)
        need_workflow.confirm(need.need_id)
        need_workflow.supervisor_approve(need.need_id)

        need.refresh_from_db()
        self.assertEqual(need.status, NeedStatus.COLLECTED.value)
        self.assertIsNotNone(need.pickup_date)

    def test_supervisor_reject_from_pending_super(self) -> None:
        need = _need(status="等待主管審核")

        need_workflow.supervisor_reject(need.need_id)

        need.refresh_from_db()
        self.assertEqual(need.status, NeedStatus.REJECTED.value)

    def test_supervisor_operations_require_pending_super(self) -> None:
        need = _need(status=NeedStatus.APPROVED.value)

        with self.assertRaises(InvalidTransition):
            need_workflow.supervisor_approve(need.need_id)
        with self.assertRaises(InvalidTransition):
            need_workflow.supervisor_reject(need.need_id)

        need.refresh_from_db()
        self.assertEqual(need.status, NeedStatus.APPROVED.value)

    def test_terminal_states_do_not_reopen(self) -> None:
        for status in (NeedStatus.REJECTED.value, NeedStatus.COLLECTED.value):
            need = _need(status=status)
            for transition in (
                need_workflow.approve,
                need_workflow.reject,
                need_workflow.confirm,
                need_workflow.supervisor_approve,
                need_workflow.supervisor_reject,
                need_workflow.collect,
            ):
                with self.subTest(status=status, transition=transition.__name__):
                    with self.assertRaises(InvalidTransition):
                        transition(need.need_id)
            need.refresh_from_db()
            self.assertEqual(need.status, status)

    def test_missing_need_raises_not_found(self) -> None:
        with self.assertRaises(NotFound):
            need_workflow.approve(999)

    def test_collect_attaches_to_pending_batch(self) -> None:
        batch = _batch()
        need = _need(status=NeedStatus.APPROVED.value)

        need_workflow.collect(need.need_id, batch.distribution_batch_id)

        need.refresh_from_db()
        self.assertEqual(need.status, NeedStatus.COLLECTED.value)
        self.assertEqual(need.batch_id, batch.distribution_batch_id)
        self.assertIsNotNone(need.pickup_date)

    def test_collect_requires_approved_or_pending_super(self) -> None:
        need = _need(status=NeedStatus.PENDING.value)

        with self.assertRaises(InvalidTransition):
            need_workflow.collect(need.need_id)

        need.refresh_from_db()
        self.assertEqual(need.status, NeedStatus.PENDING.value)

    @override_settings(SUPPLY_COLLECT_REQUIRES_APPROVAL=False)
    def test_collect_guard_can_be_disabled(self) -> None:
        need = _need(status=NeedStatus.PENDING.value)

        need_workflow.collect(need.need_id)

        need.refresh_from_db()
        self.assertEqual(need.status, NeedStatus.COLLECTED.value)

    def test_collect_into_missing_batch_is_not_found(self) -> None:
        need = _need(status=NeedStatus.APPROVED.value)

        with self.assertRaises(NotFound):
            need_workflow.collect(need.need_id, 404)

        need.refresh_from_db()
        self.assertEqual(need.status, NeedStatus.APPROVED.value)
        self.assertIsNone(need.batch_id)

    def test_collect_into_closed_batch_is_rejected(self) -> None:
        batch = _batch(status=BatchStatus.APPROVED.value)
        need = _need(status=NeedStatus.APPROVED.value)

        with self.assertRaises(InvalidTransition):
            need_workflow.collect(need.need_id, batch.distribution_batch_id)

    def test_collect_locks_batch_before_need(self) -> None:
        batch = _batch()
        need = _need(status=NeedStatus.APPROVED.value)
        order = []
        lock_batch = need_workflow._lock_pending_batch
        load_need = need_workflow._load_for_update

        def record_batch(batch_id):
            order.append("batch")
            return lock_batch(batch_id)

        def record_need(need_id):
            order.append("need")
            return load_need(need_id)

        with patch.object(
            DistributionBatch.objects,
            "select_for_update",
            wraps=DistributionBatch.objects.select_for_update,
        ) as batch_lock, patch.object(
            need_workflow, "_lock_pending_batch", side_effect=record_batch
        ), patch.object(need_workflow, "_load_for_update", side_effect=record_need):
            need_workflow.collect(need.need_id, batch.distribution_batch_id)

        self.assertEqual(order, ["batch", "need"])
        batch_lock.assert_called_once_with()
        need.refresh_from_db()
        self.assertEqual(need.batch_id, batch.distribution_batch_id)

    def test_collect_after_batch_rejection_leaves_need_detached(self) -> None:
        batch = _batch()
        need = _need(status=NeedStatus.APPROVED.value)
        batch_service.reject_batch(batch.distribution_batch_id, rejected_by=9, reason="recount")

        with self.assertRaises(InvalidTransition):
            need_workflow.collect(need.need_id, batch.distribution_batch_id)

        need.refresh_from_db()
        self.assertEqual(need.status, NeedStatus.APPROVED.value)
        self.assertIsNone(need.batch_id)
        self.assertFalse(SupplyNeed.objects.filter(batch_id=batch.distribution_batch_id).exists())

    def test_save_failure_surfaces_as_persistence_failure(self) -> None:
        need = _need()

        with patch.object(SupplyNeed, "save", side_effect=DatabaseError("disk full")):
            with self.assertRaises(PersistenceFailure) as ctx:
                need_workflow.approve(need.need_id)

        self.assertIsInstance(ctx.exception.__cause__, DatabaseError)
        need.refresh_from_db()
        self.assertEqual(need.status, NeedStatus.PENDING.value)

    def test_create_need_starts_pending(self) -> None:
        need = need_workflow.create_need(case_id=4, supply_id=2, quantity=3)

        self.assertEqual(need.status, NeedStatus.PENDING.value)
        self.assertIsNotNone(need.apply_date)

    def test_list_and_stats_degrade_without_legacy_tables(self) -> None:
        _need()
        _need(status="批准")
        _need(status=NeedStatus.COLLECTED.value)

        items, warnings = need_workflow.list_needs()
        stats, stat_warnings = need_workflow.need_stats()

        self.assertEqual(len(items), 3)
        self.assertIn("case_directory_unavailable", warnings)
        self.assertEqual(items[0]["case_name"], "Unknown")
        self.assertEqual(stats["total_requests"], 3)
        self.assertEqual(stats["pending_requests"], 1)
        self.assertEqual(stats["approved_requests"], 1)
        self.assertEqual(stats["collected_requests"], 1)
        self.assertEqual(stats["total_estimated_cost"], 0.0)
        self.assertIn("supply_catalog_unavailable", stat_warnings)

    @patch("supplies.services.need_workflow.data_access.get_supplies")
    @patch("supplies.services.need_workflow.data_access.get_case_ids_for_worker")
    def test_stats_scope_to_worker_cases(self, mock_case_ids, mock_supplies) -> None:
        from decimal import Decimal

        mock_case_ids.return_value = ([10], [])
        mock_supplies.return_value = ({1: {"name": "Rice", "price": Decimal("12.50")}}, [])
        _need(case_id=10, quantity=2)
        _need(case_id=11, quantity=5)

        stats, warnings = need_workflow.need_stats(worker_id=3)

        mock_case_ids.assert_called_once_with(3)
        self.assertEqual(warnings, [])
        self.assertEqual(stats["total_requests"], 1)
        self.assertEqual(stats["total_estimated_cost"], 25.0)


class BatchCoordinatorTests(TestCase):
    def test_reject_releases_member_needs(self) -> None:
        batch = _batch(distribution_batch_id=7)
        n1 = _need(status=NeedStatus.COLLECTED.value, batch=batch)
        n2 = _need(status="已領取", batch=batch)
        other_batch = _batch()
        outsider = _need(status=NeedStatus.COLLECTED.value, batch=other_batch)
        loose = _need(status=NeedStatus.APPROVED.value)

        rejected, released = batch_service.reject_batch(7, rejected_by=3, reason="bad count")

        self.assertEqual(released, 2)
        self.assertEqual(rejected.status, BatchStatus.REJECTED.value)
        for need in (n1, n2):
            need.refresh_from_db()
            self.assertEqual(need.status, NeedStatus.APPROVED.value)
            self.assertIsNone(need.batch_id)
        batch.refresh_from_db()
        self.assertEqual(batch.status, BatchStatus.REJECTED.value)
        self.assertEqual(batch.notes, "bad count")
        self.assertEqual(batch.approved_by_worker_id, 3)
        self.assertIsNotNone(batch.approved_at)

        outsider.refresh_from_db()
        self.assertEqual(outsider.status, NeedStatus.COLLECTED.value)
        self.assertEqual(outsider.batch_id, other_batch.distribution_batch_id)
        loose.refresh_from_db()
        self.assertEqual(loose.status, NeedStatus.APPROVED.value)

    def test_reject_without_reason_uses_default(self) -> None:
        batch = _batch()

        rejected, released = batch_service.reject_batch(batch.distribution_batch_id, rejected_by=3, reason="  ")

        self.assertEqual(released, 0)
        self.assertEqual(rejected.notes, "Rejected by supervisor")

    def test_reject_is_all_or_nothing(self) -> None:
        batch = _batch()
        need = _need(status=NeedStatus.COLLECTED.value, batch=batch)

        with patch.object(DistributionBatch, "save", side_effect=DatabaseError("connection lost")):
            with self.assertRaises(PersistenceFailure):
                batch_service.reject_batch(batch.distribution_batch_id, rejected_by=3, reason="x")

        need.refresh_from_db()
        self.assertEqual(need.status, NeedStatus.COLLECTED.value)
        self.assertEqual(need.batch_id, batch.distribution_batch_id)
        batch.refresh_from_db()
        self.assertEqual(batch.status, BatchStatus.PENDING.value)

    def test_rejected_needs_can_join_a_new_batch(self) -> None:
        first = _batch()
        need = _need(status=NeedStatus.COLLECTED.value, batch=first)
        batch_service.reject_batch(first.distribution_batch_id, rejected_by=3)
        second = _batch()

        need_workflow.collect(need.need_id, second.distribution_batch_id)

        need.refresh_from_db()
        self.assertEqual(need.batch_id, second.distribution_batch_id)

    def test_approve_keeps_needs_collected(self) -> None:
        batch = _batch()
        need = _need(status=NeedStatus.COLLECTED.value, batch=batch)

        approved = batch_service.approve_batch(batch.distribution_batch_id, approved_by=5)

        self.assertEqual(approved.status, BatchStatus.APPROVED.value)
        self.assertEqual(approved.approved_by_worker_id, 5)
        need.refresh_from_db()
        self.assertEqual(need.status, NeedStatus.COLLECTED.value)
        self.assertEqual(need.batch_id, batch.distribution_batch_id)

    def test_only_pending_batches_can_be_decided(self) -> None:
        batch = _batch(status="已批准")

        with self.assertRaises(InvalidTransition):
            batch_service.approve_batch(batch.distribution_batch_id, approved_by=5)
        with self.assertRaises(InvalidTransition):
            batch_service.reject_batch(batch.distribution_batch_id, rejected_by=5)

    def test_missing_batch_is_not_found(self) -> None:
        with self.assertRaises(NotFound):
            batch_service.reject_batch(12345, rejected_by=3)
        with self.assertRaises(NotFound):
            batch_service.get_batch(12345)

    def test_list_needs_in_batch_and_detail(self) -> None:
        batch = _batch()
        _need(status=NeedStatus.COLLECTED.value, batch=batch)
        _need(status=NeedStatus.COLLECTED.value, batch=batch)
        _need(status=NeedStatus.APPROVED.value)

        members = batch_service.list_needs_in_batch(batch.distribution_batch_id)
        detail, _ = batch_service.batch_detail(batch.distribution_batch_id)

        self.assertEqual(len(members), 2)
        self.assertEqual(detail["need_count"], 2)
        self.assertEqual(detail["status"], BatchStatus.PENDING.value)

    def test_list_batches_newest_first(self) -> None:
        older = _batch(distribution_date=timezone.now() - timedelta(days=3))
        newer = _batch()

        items, _ = batch_service.list_batches()

        self.assertEqual(
            [item["distribution_batch_id"] for item in items],
            [newer.distribution_batch_id, older.distribution_batch_id],
        )

    @patch("supplies.services.batches.data_access.get_case_ids_for_worker")
    def test_list_batches_scoped_to_worker(self, mock_case_ids) -> None:
        mock_case_ids.return_value = ([21], [])
        mine = _batch()
        _need(case_id=21, status=NeedStatus.COLLECTED.value, batch=mine)
        theirs = _batch()
        _need(case_id=22, status=NeedStatus.COLLECTED.value, batch=theirs)

        items, _ = batch_service.list_batches(worker_id=3)

        self.assertEqual([item["distribution_batch_id"] for item in items], [mine.distribution_batch_id])


class SupplyMatchTests(TestCase):
    def test_match_does_not_change_need_status(self) -> None:
        need = _need(status=NeedStatus.APPROVED.value)

        match = match_service.create_match(need.need_id, 2, 3, "from donation shelf")

        need.refresh_from_db()
        self.assertEqual(need.status, NeedStatus.APPROVED.value)
        self.assertEqual(SupplyMatch.objects.filter(need=need).count(), 1)
        self.assertEqual(match.note, "from donation shelf")

    def test_match_for_missing_need(self) -> None:
        with self.assertRaises(NotFound):
            match_service.create_match(999, 1, 3)


class SupplyApiTests(TestCase):
    def setUp(self) -> None:
        self.client = APIClient()

    @override_settings(**STAFF_AUTH)
    def test_create_and_approve_need(self) -> None:
        response = self.client.post(
            "/api/v1/supplies/needs",
            {"case_id": 1, "supply_id": 2, "quantity": 3},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        need_id = response.json()["need"]["need_id"]
        self.assertEqual(response.json()["need"]["status"], "pending")

        response = self.client.post(f"/api/v1/supplies/needs/{need_id}/approve", format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["need"]["status"], "approved")

    @override_settings(**STAFF_AUTH)
    def test_create_need_validates_fields(self) -> None:
        response = self.client.post(
            "/api/v1/supplies/needs",
            {"case_id": "abc", "supply_id": 2, "quantity": 0},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        errors = response.json()["errors"]
        self.assertIn("case_id", errors)
        self.assertIn("quantity", errors)

    @override_settings(**STAFF_AUTH)
    def test_confirm_pending_need_conflicts(self) -> None:
        need = _need()

        response = self.client.post(f"/api/v1/supplies/needs/{need.need_id}/confirm", format="json")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(
            response.json(),
            {"errors": {"status": "Only approved requests can be confirmed."}},
        )

    @override_settings(**STAFF_AUTH)
    def test_missing_need_is_404(self) -> None:
        response = self.client.get("/api/v1/supplies/needs/999")

        self.assertEqual(response.status_code, 404)
        self.assertIn("need_id", response.json()["errors"])

    @override_settings(**STAFF_AUTH)
    def test_staff_cannot_supervisor_approve(self) -> None:
        need = _need(status=NeedStatus.PENDING_SUPER.value)

        response = self.client.post(
            f"/api/v1/supplies/needs/{need.need_id}/supervisor-approve",
            format="json",
        )

        self.assertEqual(response.status_code, 403)

    @override_settings(**VIEWER_AUTH)
    def test_viewer_can_list_but_not_create(self) -> None:
        self.assertEqual(self.client.get("/api/v1/supplies/needs").status_code, 200)

        response = self.client.post(
            "/api/v1/supplies/needs",
            {"case_id": 1, "supply_id": 2, "quantity": 3},
            format="json",
        )
        self.assertEqual(response.status_code, 403)

    @override_settings(**STAFF_AUTH)
    def test_collect_into_batch(self) -> None:
        batch = _batch()
        need = _need(status=NeedStatus.APPROVED.value)

        response = self.client.post(
            f"/api/v1/supplies/needs/{need.need_id}/collect",
            {"batch_id": batch.distribution_batch_id},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()["need"]
        self.assertEqual(body["status"], "collected")
        self.assertEqual(body["batch_id"], batch.distribution_batch_id)

    @override_settings(**STAFF_AUTH)
    def test_create_batch_uses_principal_worker_id(self) -> None:
        response = self.client.post(
            "/api/v1/supplies/batches",
            {"distribution_date": "2024-06-01", "case_count": 2, "total_supply_items": 5},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        body = response.json()["batch"]
        self.assertEqual(body["status"], "pending")
        self.assertEqual(body["created_by_worker_id"], 3)
        self.assertEqual(body["distribution_date"], "2024-06-01")

    @override_settings(**SUPERVISOR_AUTH)
    def test_supervisor_rejects_batch(self) -> None:
        batch = _batch()
        need = _need(status=NeedStatus.COLLECTED.value, batch=batch)

        response = self.client.post(
            f"/api/v1/supplies/batches/{batch.distribution_batch_id}/reject",
            {"reason": "bad count"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["released_needs"], 1)
        self.assertEqual(body["batch"]["status"], "rejected")
        self.assertEqual(body["batch"]["approved_by_worker_id"], 5)
        need.refresh_from_db()
        self.assertEqual(need.status, NeedStatus.APPROVED.value)

    @override_settings(**SUPERVISOR_AUTH)
    def test_reject_persistence_failure_is_500(self) -> None:
        batch = _batch()

        with patch(
            "supplies.views.batch_service.reject_batch",
            side_effect=PersistenceFailure("Could not reject distribution batch."),
        ):
            response = self.client.post(
                f"/api/v1/supplies/batches/{batch.distribution_batch_id}/reject",
                {"reason": "x"},
                format="json",
            )

        self.assertEqual(response.status_code, 500)

    @override_settings(**STAFF_AUTH)
    def test_staff_cannot_approve_batch(self) -> None:
        batch = _batch()

        response = self.client.post(
            f"/api/v1/supplies/batches/{batch.distribution_batch_id}/approve",
            format="json",
        )

        self.assertEqual(response.status_code, 403)

    @override_settings(**STAFF_AUTH)
    def test_batch_needs_listing(self) -> None:
        batch = _batch()
        _need(status=NeedStatus.COLLECTED.value, batch=batch)

        response = self.client.get(f"/api/v1/supplies/batches/{batch.distribution_batch_id}/needs")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["count"], 1)

    @override_settings(**STAFF_AUTH)
    def test_record_match(self) -> None:
        need = _need(status=NeedStatus.APPROVED.value)

        response = self.client.post(
            "/api/v1/supplies/matches",
            {"need_id": need.need_id, "matched_quantity": 2},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["match"]["matched_by_worker_id"], 3)
        listing = self.client.get(f"/api/v1/supplies/matches?need_id={need.need_id}")
        self.assertEqual(listing.json()["count"], 1)
