from decimal import Decimal

from rest_framework import serializers

from accounts.serializers import UserBasicSerializer
from common.choices import PaymentMethod, VehicleClass
from drivers.serializers import DriverBasicSerializer
from .models import ChatMessage, Ride


class RideSerializer(serializers.ModelSerializer):
    """Ride as seen by drivers and in broadcasts. Never carries the verification code."""
    rider = UserBasicSerializer(read_only=True)
    driver = DriverBasicSerializer(read_only=True, allow_null=True, source='driver.driver_profile')

    class Meta:
        model = Ride
        fields = ['id', 'rider', 'driver',
                  'pickup_address', 'pickup_latitude', 'pickup_longitude',
                  'destination_address', 'destination_latitude', 'destination_longitude',
                  'vehicle_class', 'status', 'fare_amount', 'fare_currency', 'surge_multiplier',
                  'distance_meters', 'duration_seconds',
                  'requested_at', 'accepted_at', 'estimated_arrival_at', 'actual_arrival_at',
                  'actual_end_at', 'cancelled_at', 'cancellation_reason', 'cancelled_by',
                  'payment_method', 'tip', 'rating', 'review']


class RiderRideSerializer(RideSerializer):
    """Ride as seen by its rider, who reads the code out to the driver at pickup."""

    class Meta(RideSerializer.Meta):
        fields = RideSerializer.Meta.fields + ['verification_code']


def serialize_ride_for(ride, user_id) -> dict:
    """Pick the representation appropriate for the requesting user."""
    if user_id is not None and ride.rider_id == user_id:
        return RiderRideSerializer(ride).data
    return RideSerializer(ride).data


class PlaceSerializer(serializers.Serializer):
    address = serializers.CharField(required=False, allow_blank=True, default="")
    lat = serializers.FloatField(min_value=-90, max_value=90)
    lng = serializers.FloatField(min_value=-180, max_value=180)


class FareRequestSerializer(serializers.Serializer):
    """Pickup and destination for a fare estimate"""
    pickup = PlaceSerializer()
    destination = PlaceSerializer()


class RideCreateSerializer(FareRequestSerializer):
    """Serializer for creating rides"""
    vehicle_class = serializers.ChoiceField(choices=VehicleClass.choices)


class StartRideSerializer(serializers.Serializer):
    verification_code = serializers.CharField(max_length=6)


class EndRideSerializer(serializers.Serializer):
    payment_method = serializers.ChoiceField(choices=PaymentMethod.choices)
    tip = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=Decimal("0"), required=False, default=Decimal("0"))


class RideCancelSerializer(serializers.Serializer):
    """Serializer for ride cancellation"""
    reason = serializers.CharField(required=False, allow_blank=True, default="")


class RateRideSerializer(serializers.Serializer):
    rating = serializers.IntegerField(min_value=1, max_value=5)
    review = serializers.CharField(required=False, allow_blank=True, default="")


class ChatMessageSerializer(serializers.ModelSerializer):
    ride_id = serializers.UUIDField(read_only=True)
    sender_id = serializers.IntegerField(read_only=True)

    class Meta:
        model = ChatMessage
        fields = ['id', 'ride_id', 'sender_id', 'sender_role', 'text', 'status', 'created_at', 'read_at']
        read_only_fields = fields


class ChatMessageCreateSerializer(serializers.Serializer):
    text = serializers.CharField()


class ChatReadSerializer(serializers.Serializer):
    message_ids = serializers.ListField(child=serializers.IntegerField(), required=False)
