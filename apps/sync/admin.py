from django.contrib import admin

from .models import AppliedChange, Conflict, RecordRevision, RecordUniqueKey, StoreMembership, TrackedRecord


class RecordRevisionInline(admin.TabularInline):
    model = RecordRevision
    extra = 0
    readonly_fields = ("version", "payload", "tombstone", "created_at")


@admin.register(StoreMembership)
class StoreMembershipAdmin(admin.ModelAdmin):
    list_display = ("user", "store_id", "organization_id", "created_at")
    search_fields = ("user__username", "store_id", "organization_id")


@admin.register(TrackedRecord)
class TrackedRecordAdmin(admin.ModelAdmin):
    list_display = ("id", "table", "store_id", "version", "tombstone", "updated_at")
    list_filter = ("table", "tombstone")
    search_fields = ("id", "local_id", "store_id")
    inlines = [RecordRevisionInline]


@admin.register(RecordUniqueKey)
class RecordUniqueKeyAdmin(admin.ModelAdmin):
    list_display = ("store_id", "table", "field", "value", "record")
    search_fields = ("value", "store_id")


@admin.register(AppliedChange)
class AppliedChangeAdmin(admin.ModelAdmin):
    list_display = ("local_id", "store_id", "table", "action", "status", "created_at")
    list_filter = ("table", "action", "status")
    search_fields = ("local_id", "store_id")


@admin.register(Conflict)
class ConflictAdmin(admin.ModelAdmin):
    list_display = ("id", "table", "record", "client_local_id", "base_version", "server_version", "status", "created_at")
    list_filter = ("table", "status")
    search_fields = ("client_local_id", "store_id")
