from django.urls import path
from .views import (
    DriverProfileView,
    DriverAvailabilityView,
    DriverLocationUpdateView,
)

urlpatterns = [
    path("profile/", DriverProfileView.as_view(), name="driver-profile"),
    path("availability/", DriverAvailabilityView.as_view(), name="driver-availability"),
    path("location/", DriverLocationUpdateView.as_view(), name="driver-location"),
]
