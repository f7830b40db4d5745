from django.contrib import admin
from drivers.models import DriverProfile


@admin.register(DriverProfile)
class DriverProfileAdmin(admin.ModelAdmin):
    """Admin panel for managing Driver Profiles"""

    list_display = [
        "user",
        "vehicle_number",
        "vehicle_class",
        "on_duty",
        "is_available",
        "current_latitude",
        "current_longitude",
        "last_seen",
    ]

    list_filter = [
        "on_duty",
        "is_available",
        "vehicle_class",
        "last_seen",
    ]

    search_fields = [
        "user__username",
        "vehicle_number",
    ]

    # Availability is owned by the registry; edit through the API
    readonly_fields = [
        "on_duty",
        "is_available",
        "last_seen",
    ]

    ordering = ("user__username",)
