from rest_framework.decorators import api_view, authentication_classes, permission_classes
from rest_framework.response import Response

from activities.services import registrations as registration_service
from activities.status_catalog import RegistrationStatus, is_known_registration_status
from api.authentication import LegacyCompatAuthentication
from api.exceptions import WorkflowError, error_response
from api.permissions import WorkflowPermission, requires
from api.rbac import PERM_REGISTRATION_REVIEW, PERM_REGISTRATION_VIEW

_ACCEPTED_STATUS_HINT = ", ".join(status.value for status in RegistrationStatus)


@requires(PERM_REGISTRATION_VIEW)
@api_view(["GET"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([WorkflowPermission])
def case_registrations(request):
    items, warnings = registration_service.list_case_registrations()
    return Response({"registrations": items, "count": len(items), "warnings": warnings})


@requires(PERM_REGISTRATION_VIEW)
@api_view(["GET"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([WorkflowPermission])
def user_registrations(request):
    items, warnings = registration_service.list_public_registrations()
    return Response({"registrations": items, "count": len(items), "warnings": warnings})


def _update_status(request, kind: str, registration_id: int) -> Response:
    new_status = (request.data or {}).get("status")
    if not isinstance(new_status, str) or not is_known_registration_status(new_status):
        return Response(
            {"errors": {"status": f"Must be one of: {_ACCEPTED_STATUS_HINT}."}},
            status=400,
        )

    try:
        registration, delta = registration_service.set_status(kind, registration_id, new_status)
    except WorkflowError as exc:
        return error_response(exc)

    return Response(
        {
            "registration_id": registration.registration_id,
            "activity_id": registration.activity_id,
            "status": registration.status,
            "participant_delta": delta,
        }
    )


@requires(PERM_REGISTRATION_REVIEW)
@api_view(["PUT"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([WorkflowPermission])
def case_registration_status(request, registration_id: int):
    return _update_status(request, "case", registration_id)


@requires(PERM_REGISTRATION_REVIEW)
@api_view(["PUT"])
@authentication_classes([LegacyCompatAuthentication])
@permission_classes([WorkflowPermission])
def user_registration_status(request, registration_id: int):
    return _update_status(request, "public", registration_id)
