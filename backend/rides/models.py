import uuid

from django.conf import settings
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import Q

from common.choices import CancelledBy, ChatRole, MessageStatus, PaymentMethod, RideStatus, VehicleClass
from common.utils import Coordinates, Place

# Statuses in which a driver reference must be present
DRIVER_ASSIGNED_STATUSES = (
    RideStatus.ACCEPTED,
    RideStatus.ON_THE_WAY,
    RideStatus.IN_PROGRESS,
    RideStatus.COMPLETED,
)
ACTIVE_STATUSES = (
    RideStatus.REQUESTED,
    RideStatus.ACCEPTED,
    RideStatus.ON_THE_WAY,
    RideStatus.IN_PROGRESS,
)
TERMINAL_STATUSES = (RideStatus.COMPLETED, RideStatus.CANCELLED)
# Statuses in which the assigned driver is occupied by the ride
DRIVER_BUSY_STATUSES = (
    RideStatus.ACCEPTED,
    RideStatus.ON_THE_WAY,
    RideStatus.IN_PROGRESS,
)


class Ride(models.Model):
    """One trip request from creation to a terminal outcome. Never deleted."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Parties
    rider = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='rides'
    )

    driver = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='driven_rides'
    )

    # Pickup location
    pickup_address = models.TextField()
    pickup_latitude = models.DecimalField(max_digits=9, decimal_places=6)
    pickup_longitude = models.DecimalField(max_digits=9, decimal_places=6)

    # Destination
    destination_address = models.TextField()
    destination_latitude = models.DecimalField(max_digits=9, decimal_places=6)
    destination_longitude = models.DecimalField(max_digits=9, decimal_places=6)

    vehicle_class = models.CharField(max_length=10, choices=VehicleClass.choices)
    status = models.CharField(max_length=20, choices=RideStatus.choices, default=RideStatus.REQUESTED)

    # Pricing, fixed at creation
    fare_amount = models.DecimalField(max_digits=10, decimal_places=2, validators=[MinValueValidator(0)])
    fare_currency = models.CharField(max_length=3, default='USD')
    surge_multiplier = models.DecimalField(max_digits=3, decimal_places=2, default=1)
    distance_meters = models.FloatField()
    duration_seconds = models.FloatField()

    verification_code = models.CharField(max_length=6, editable=False)

    # Timestamps
    requested_at = models.DateTimeField(auto_now_add=True)
    accepted_at = models.DateTimeField(null=True, blank=True)
    estimated_arrival_at = models.DateTimeField(null=True, blank=True)
    actual_arrival_at = models.DateTimeField(null=True, blank=True)
    actual_end_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    cancellation_reason = models.TextField(blank=True)
    cancelled_by = models.CharField(max_length=10, choices=CancelledBy.choices, blank=True)

    # Settlement & feedback
    payment_method = models.CharField(max_length=10, choices=PaymentMethod.choices, blank=True)
    tip = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    rating = models.PositiveSmallIntegerField(
        null=True, blank=True,
        validators=[MinValueValidator(1), MaxValueValidator(5)]
    )
    review = models.TextField(blank=True)

    # Bumped on every transition; guards conditional updates
    version = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = 'rides'
        ordering = ['-requested_at']
        indexes = [
            models.Index(fields=['status'], name='ride_status_idx'),
            models.Index(fields=['rider', 'status'], name='ride_rider_status_idx'),
            models.Index(fields=['driver', 'status'], name='ride_driver_status_idx'),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(fare_amount__gte=0),
                name='ride_fare_non_negative',
            ),
            models.CheckConstraint(
                condition=Q(rating__isnull=True) | Q(rating__gte=1, rating__lte=5),
                name='ride_rating_range',
            ),
            models.CheckConstraint(
                condition=(
                    Q(driver__isnull=False, status__in=DRIVER_ASSIGNED_STATUSES)
                    | Q(driver__isnull=True, status__in=(RideStatus.REQUESTED, RideStatus.CANCELLED))
                ),
                name='ride_driver_matches_status',
            ),
        ]

    @property
    def pickup(self) -> Place:
        return Place(
            address=self.pickup_address,
            coordinates=Coordinates(float(self.pickup_latitude), float(self.pickup_longitude)),
        )

    @property
    def destination(self) -> Place:
        return Place(
            address=self.destination_address,
            coordinates=Coordinates(float(self.destination_latitude), float(self.destination_longitude)),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __str__(self):
        return f"Ride #{self.id} - {self.rider} - {self.status}"


class ChatMessage(models.Model):
    """A message between the rider and the driver of one ride."""

    ride = models.ForeignKey(Ride, on_delete=models.CASCADE, related_name='messages')
    sender = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='sent_messages'
    )
    sender_role = models.CharField(max_length=10, choices=ChatRole.choices)
    text = models.TextField()
    status = models.CharField(max_length=10, choices=MessageStatus.choices, default=MessageStatus.SENT)

    created_at = models.DateTimeField(auto_now_add=True)
    read_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'ride_chat_messages'
        ordering = ['created_at', 'id']
        indexes = [
            models.Index(fields=['ride', 'created_at'], name='chat_ride_created_idx'),
        ]

    def __str__(self):
        return f"{self.sender_role} on ride #{self.ride_id}: {self.text[:30]}"
