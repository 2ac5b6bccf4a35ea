from django.urls import path

from supplies.views import (
    batch_approve,
    batch_detail,
    batch_needs,
    batch_reject,
    batches_collection,
    matches_collection,
    need_approve,
    need_collect,
    need_confirm,
    need_detail,
    need_reject,
    need_stats,
    need_supervisor_approve,
    need_supervisor_reject,
    needs_collection,
)

urlpatterns = [
    path("needs", needs_collection, name="needs_collection"),
    path("needs/stats", need_stats, name="need_stats"),
    path("needs/<int:need_id>", need_detail, name="need_detail"),
    path("needs/<int:need_id>/approve", need_approve, name="need_approve"),
    path("needs/<int:need_id>/reject", need_reject, name="need_reject"),
    path("needs/<int:need_id>/confirm", need_confirm, name="need_confirm"),
    path(
        "needs/<int:need_id>/supervisor-approve",
        need_supervisor_approve,
        name="need_supervisor_approve",
    ),
    path(
        "needs/<int:need_id>/supervisor-reject",
        need_supervisor_reject,
        name="need_supervisor_reject",
    ),
    path("needs/<int:need_id>/collect", need_collect, name="need_collect"),
    path("batches", batches_collection, name="batches_collection"),
    path("batches/<int:batch_id>", batch_detail, name="batch_detail"),
    path("batches/<int:batch_id>/needs", batch_needs, name="batch_needs"),
    path("batches/<int:batch_id>/approve", batch_approve, name="batch_approve"),
    path("batches/<int:batch_id>/reject", batch_reject, name="batch_reject"),
    path("matches", matches_collection, name="matches_collection"),
]
