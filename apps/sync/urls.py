from django.urls import path

from . import views

urlpatterns = [
    path("sync/health", views.sync_health, name="sync_health"),
    path("sync/push", views.sync_push, name="sync_push"),
    path("sync/pull", views.sync_pull, name="sync_pull"),
    path("sync/conflicts", views.conflict_list, name="sync_conflicts"),
    path("sync/conflicts/<int:conflict_id>", views.conflict_detail, name="sync_conflict_detail"),
    path("sync/conflicts/<int:conflict_id>/resolve", views.conflict_resolve, name="sync_conflict_resolve"),
    path("sync/conflicts/<int:conflict_id>/reject", views.conflict_reject, name="sync_conflict_reject"),
]
