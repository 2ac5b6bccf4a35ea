from types import SimpleNamespace
from unittest.mock import patch

from django.test import SimpleTestCase, TestCase, override_settings
from rest_framework.test import APIClient

from api import rbac
from api.authentication import Principal
from api.exceptions import InvalidTransition, NotFound, PersistenceFailure, error_response
from api.parsing import actor_worker_id, parse_datetime_field, parse_positive_int


class HealthEndpointTests(TestCase):
    def test_health(self) -> None:
        client = APIClient()
        response = client.get("/api/v1/health/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})


class AuthWhoAmITests(TestCase):
    def setUp(self) -> None:
        self.client = APIClient()

    @override_settings(
        AUTH_ENABLED=True,
        DEV_AUTH_ENABLED=False,
        AUTH_ISSUER="https://issuer.example",
        AUTH_AUDIENCE="ngo-api",
        AUTH_JWKS_URL="https://issuer.example/.well-known/jwks.json",
        AUTH_USER_ID_CLAIM="sub",
        AUTH_ROLES_CLAIM="roles",
    )
    def test_whoami_requires_auth(self) -> None:
        response = self.client.get("/api/v1/auth/whoami/")

        self.assertEqual(response.status_code, 401)

    @override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID="dev-user",
        DEV_AUTH_ROLES=["VIEWER"],
        DEV_AUTH_PERMISSIONS=[],
        DEBUG=True,
    )
    def test_whoami_reports_viewer_permissions(self) -> None:
        response = self.client.get("/api/v1/auth/whoami/")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["user_id"], "dev-user")
        self.assertIsNone(body["worker_id"])
        self.assertEqual(body["roles"], ["VIEWER"])
        self.assertIn(rbac.PERM_NEED_VIEW, body["permissions"])
        self.assertNotIn(rbac.PERM_NEED_REVIEW, body["permissions"])

    @override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID="7",
        DEV_AUTH_ROLES=["主管"],
        DEV_AUTH_PERMISSIONS=[],
        DEBUG=True,
    )
    def test_whoami_maps_legacy_supervisor_role(self) -> None:
        response = self.client.get("/api/v1/auth/whoami/")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["worker_id"], 7)
        self.assertEqual(body["roles"], ["SUPERVISOR"])
        self.assertIn(rbac.PERM_BATCH_APPROVE, body["permissions"])
        self.assertIn(rbac.PERM_NEED_SUPERVISE, body["permissions"])


class RbacResolutionTests(SimpleTestCase):
    def test_staff_cannot_supervise(self) -> None:
        request = SimpleNamespace()
        principal = Principal(user_id="3", username="worker", roles=["worker"])

        roles, permissions = rbac.resolve_roles_and_permissions(request, principal)

        self.assertEqual(roles, ["STAFF"])
        self.assertIn(rbac.PERM_NEED_COLLECT, permissions)
        self.assertNotIn(rbac.PERM_NEED_SUPERVISE, permissions)
        self.assertNotIn(rbac.PERM_BATCH_APPROVE, permissions)

    def test_explicit_permissions_are_kept_and_cached(self) -> None:
        request = SimpleNamespace()
        principal = Principal(
            user_id="3",
            username="worker",
            roles=[],
            permissions=[rbac.PERM_BATCH_APPROVE],
        )

        _, permissions = rbac.resolve_roles_and_permissions(request, principal)
        principal.permissions = []
        _, cached = rbac.resolve_roles_and_permissions(request, principal)

        self.assertEqual(permissions, [rbac.PERM_BATCH_APPROVE])
        self.assertEqual(cached, permissions)


class ErrorResponseTests(SimpleTestCase):
    def test_status_codes_follow_error_type(self) -> None:
        self.assertEqual(error_response(NotFound("missing")).status_code, 404)
        self.assertEqual(error_response(InvalidTransition("nope")).status_code, 409)
        self.assertEqual(error_response(PersistenceFailure("boom")).status_code, 500)

    def test_body_uses_error_field(self) -> None:
        response = error_response(NotFound("Supply need 4 not found.", field="need_id"))

        self.assertEqual(response.data, {"errors": {"need_id": "Supply need 4 not found."}})

    def test_persistence_failure_keeps_cause(self) -> None:
        cause = RuntimeError("disk full")
        exc = PersistenceFailure("write failed", cause=cause)

        self.assertIs(exc.cause, cause)
        self.assertEqual(exc.code, "persistence_failure")


class ParsingTests(SimpleTestCase):
    def test_positive_int_rejects_floats_and_zero(self) -> None:
        errors = {}
        self.assertIsNone(parse_positive_int(1.5, "quantity", errors))
        self.assertEqual(errors["quantity"], "Must be an integer.")

        errors = {}
        self.assertIsNone(parse_positive_int("0", "quantity", errors))
        self.assertEqual(errors["quantity"], "Must be a positive integer.")

        self.assertEqual(parse_positive_int(" 12 ", "quantity", {}), 12)

    def test_datetime_accepts_bare_date(self) -> None:
        errors = {}
        parsed = parse_datetime_field("2024-05-01", "distribution_date", errors)

        self.assertEqual(errors, {})
        self.assertEqual((parsed.year, parsed.month, parsed.day), (2024, 5, 1))
        self.assertIsNotNone(parsed.tzinfo)

    def test_datetime_rejects_garbage(self) -> None:
        errors = {}
        self.assertIsNone(parse_datetime_field("next tuesday", "distribution_date", errors))
        self.assertIn("distribution_date", errors)

    def test_actor_prefers_body_then_principal(self) -> None:
        request = SimpleNamespace(user=Principal(user_id="9", username="w", roles=[]))

        self.assertEqual(actor_worker_id(request, {"approved_by_worker_id": 4}, "approved_by_worker_id", {}), 4)
        self.assertEqual(actor_worker_id(request, {}, "approved_by_worker_id", {}), 9)

        anonymous = SimpleNamespace(user=Principal(user_id="dev-user", username="w", roles=[]))
        errors = {}
        self.assertIsNone(actor_worker_id(anonymous, {}, "approved_by_worker_id", errors))
        self.assertIn("approved_by_worker_id", errors)


class BearerAuthenticationTests(TestCase):
    def setUp(self) -> None:
        self.client = APIClient()

    @override_settings(
        AUTH_ENABLED=True,
        DEV_AUTH_ENABLED=False,
        AUTH_ISSUER="https://issuer.example",
        AUTH_AUDIENCE="ngo-api",
        AUTH_JWKS_URL="https://issuer.example/.well-known/jwks.json",
        AUTH_USER_ID_CLAIM="sub",
        AUTH_USERNAME_CLAIM="preferred_username",
        AUTH_ROLES_CLAIM="roles",
        AUTH_WORKER_ID_CLAIM="worker_id",
    )
    @patch("api.authentication._decode_token")
    def test_claims_become_principal(self, mock_decode) -> None:
        mock_decode.return_value = {
            "sub": "a1b2-c3",
            "preferred_username": "mei",
            "roles": "員工",
            "worker_id": 12,
        }

        response = self.client.get("/api/v1/auth/whoami/", HTTP_AUTHORIZATION="Bearer token-value")

        self.assertEqual(response.status_code, 200)
        mock_decode.assert_called_once_with("token-value")
        body = response.json()
        self.assertEqual(body["username"], "mei")
        self.assertEqual(body["worker_id"], 12)
        self.assertEqual(body["roles"], ["STAFF"])

    @override_settings(
        AUTH_ENABLED=True,
        DEV_AUTH_ENABLED=False,
        AUTH_JWKS_URL="https://issuer.example/.well-known/jwks.json",
        AUTH_USER_ID_CLAIM="sub",
        AUTH_ROLES_CLAIM="roles",
    )
    def test_non_bearer_scheme_rejected(self) -> None:
        response = self.client.get("/api/v1/auth/whoami/", HTTP_AUTHORIZATION="Basic abc")

        self.assertEqual(response.status_code, 401)
