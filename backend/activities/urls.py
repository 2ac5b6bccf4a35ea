from django.urls import path

from activities.views import (
    case_registration_status,
    case_registrations,
    user_registration_status,
    user_registrations,
)

urlpatterns = [
    path("registrations/case", case_registrations, name="case_registrations"),
    path("registrations/user", user_registrations, name="user_registrations"),
    path(
        "registrations/case/<int:registration_id>/status",
        case_registration_status,
        name="case_registration_status",
    ),
    path(
        "registrations/user/<int:registration_id>/status",
        user_registration_status,
        name="user_registration_status",
    ),
]
