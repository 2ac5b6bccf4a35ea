from django.urls import include, path

urlpatterns = [
    path("api/v1/", include("api.urls")),
    path("api/v1/supplies/", include("supplies.urls")),
    path("api/v1/activities/", include("activities.urls")),
]
