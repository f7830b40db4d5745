"""Tells what to show in the Django admin interface for rides app"""

from django.contrib import admin
from .models import ChatMessage, Ride


class ChatMessageInline(admin.TabularInline):
    model = ChatMessage
    extra = 0
    can_delete = False
    fields = ['created_at', 'sender', 'sender_role', 'text', 'status', 'read_at']
    readonly_fields = fields

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Ride)
class RideAdmin(admin.ModelAdmin):
    """Ride admin. Rides change state only through the ride services."""
    list_display = ['id', 'rider', 'driver', 'vehicle_class', 'status', 'fare_amount', 'requested_at', 'actual_end_at']
    list_filter = ['status', 'vehicle_class', 'requested_at']
    search_fields = ['rider__username', 'driver__username', 'pickup_address', 'destination_address']
    readonly_fields = [
        'status', 'driver', 'version', 'verification_code',
        'requested_at', 'accepted_at', 'estimated_arrival_at', 'actual_arrival_at',
        'actual_end_at', 'cancelled_at', 'cancelled_by',
    ]
    date_hierarchy = 'requested_at'
    inlines = [ChatMessageInline]
