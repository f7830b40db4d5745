from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin

from accounts.models import User
from drivers.models import DriverProfile


class DriverProfileInline(admin.StackedInline):
    model = DriverProfile
    can_delete = False
    extra = 0
    fields = ("vehicle_number", "vehicle_class", "on_duty", "is_available", "last_seen")
    readonly_fields = ("on_duty", "is_available", "last_seen")


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    """Riders and drivers; a driver's vehicle is edited inline."""

    inlines = [DriverProfileInline]
    list_display = ("username", "role", "phone_number", "completed_rides", "is_active")
    list_filter = ("role", "is_active")
    search_fields = ("username", "email", "phone_number")
    readonly_fields = ("completed_rides",)

    fieldsets = BaseUserAdmin.fieldsets + (
        ("Dispatch", {"fields": ("role", "phone_number", "completed_rides")}),
    )
    add_fieldsets = BaseUserAdmin.add_fieldsets + (
        ("Dispatch", {"fields": ("role", "phone_number")}),
    )
