from django.contrib import admin

from .models import JournalEntry, LocalRecord, SyncState


@admin.register(JournalEntry)
class JournalEntryAdmin(admin.ModelAdmin):
    list_display = ("id", "local_id", "table", "action", "attempts", "next_attempt_at", "last_error", "created_at")
    list_filter = ("table", "action")
    search_fields = ("local_id",)


@admin.register(LocalRecord)
class LocalRecordAdmin(admin.ModelAdmin):
    list_display = ("id", "table", "local_id", "server_id", "version", "server_version", "conflict_id", "modified_at")
    list_filter = ("table",)
    search_fields = ("local_id", "server_id")


@admin.register(SyncState)
class SyncStateAdmin(admin.ModelAdmin):
    list_display = ("store_id", "last_synced_at", "last_cycle_at", "last_error")
