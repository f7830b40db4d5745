from rest_framework import serializers
from drivers.models import DriverProfile
from accounts.serializers import UserBasicSerializer


class DriverProfileSerializer(serializers.ModelSerializer):
    """
    Full driver profile serializer
    """
    user = UserBasicSerializer(read_only=True)

    class Meta:
        model = DriverProfile
        fields = [
            "id",
            "user",
            "vehicle_number",
            "vehicle_class",
            "on_duty",
            "is_available",
            "current_latitude",
            "current_longitude",
            "last_seen",
        ]
        read_only_fields = [
            "id",
            "on_duty",
            "is_available",
            "current_latitude",
            "current_longitude",
            "last_seen",
        ]


class DriverBasicSerializer(serializers.ModelSerializer):
    """
    Lite version of driver info for ride details
    (sent to riders once a driver is assigned).
    """
    id = serializers.IntegerField(source="user_id", read_only=True)
    username = serializers.CharField(source="user.username", read_only=True)
    phone_number = serializers.CharField(source="user.phone_number", read_only=True)

    class Meta:
        model = DriverProfile
        fields = [
            "id",
            "username",
            "phone_number",
            "vehicle_number",
            "vehicle_class",
            "current_latitude",
            "current_longitude",
        ]


class AvailabilitySerializer(serializers.Serializer):
    """
    Serializer for going on or off duty.
    """
    is_available = serializers.BooleanField()


class LocationUpdateSerializer(serializers.Serializer):
    """
    Serializer for updating driver GPS location.
    """
    latitude = serializers.FloatField(min_value=-90, max_value=90)
    longitude = serializers.FloatField(min_value=-180, max_value=180)
    timestamp = serializers.DateTimeField(required=False)
