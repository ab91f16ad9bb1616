from django.contrib import admin
from .models import CheckInOutRecord, VisitSettings


@admin.register(CheckInOutRecord)
class CheckInOutRecordAdmin(admin.ModelAdmin):
    list_display = ["subject_name", "site_name", "kind", "timestamp", "auto_generated", "status"]
    list_filter = ["kind", "auto_generated", "status", "timestamp"]
    search_fields = ["subject_name", "site_name", "remarks"]
    readonly_fields = ["closes", "auto_generated", "created_at", "updated_at"]


@admin.register(VisitSettings)
class VisitSettingsAdmin(admin.ModelAdmin):
    list_display = ["max_visit_duration_hours", "geofence_radius_meters", "updated_at"]

    def has_add_permission(self, request):
        return not VisitSettings.objects.exists()
