from django.db import models
from django.conf import settings

from common.choices import VehicleClass

User = settings.AUTH_USER_MODEL

class DriverProfile(models.Model):
    """Driver-specific details, availability flag and last-known position"""
    
    user = models.OneToOneField(User, on_delete=models.CASCADE, related_name='driver_profile')
    
    # Vehicle details
    vehicle_number = models.CharField(max_length=20, unique=True)
    vehicle_class = models.CharField(max_length=10, choices=VehicleClass.choices, default=VehicleClass.STANDARD)
    
    # Availability & location, written only through drivers.registry
    on_duty = models.BooleanField(default=False)
    is_available = models.BooleanField(default=False)
    current_latitude = models.DecimalField(max_digits=9, decimal_places=6, null=True, blank=True)
    current_longitude = models.DecimalField(max_digits=9, decimal_places=6, null=True, blank=True)
    last_seen = models.DateTimeField(null=True, blank=True)
    
    class Meta:
        db_table = 'driver_profiles'
        indexes = [
            models.Index(fields=['is_available', 'vehicle_class'], name='driver_avail_class_idx'),
        ]
        
    def __str__(self):
        return f"{self.user.username} - {self.vehicle_number}"
