from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated

from common.utils.geo import Coordinates
from drivers import registry
from drivers.serializers import (
    AvailabilitySerializer,
    DriverProfileSerializer,
    LocationUpdateSerializer,
)
from realtime.notifications import publish_driver_location
from services.ride_management.exceptions import ForbiddenError


# Utility: Ensure request.user is a driver with a profile
def require_driver(user):
    if not user.is_driver:
        raise ForbiddenError("Only drivers allowed")
    return registry.get_profile(user.id)


class DriverProfileView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        profile = require_driver(request.user)
        serializer = DriverProfileSerializer(profile, context={"request": request})
        return Response(serializer.data)

    def patch(self, request):
        profile = require_driver(request.user)
        serializer = DriverProfileSerializer(
            profile,
            data={"vehicle_number": request.data.get("vehicle_number", profile.vehicle_number)},
            partial=True,
            context={"request": request},
        )
        serializer.is_valid(raise_exception=True)
        serializer.save()
        return Response(serializer.data)


#    HTTP fallback for driver_status_update over WS.
class DriverAvailabilityView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        profile = require_driver(request.user)
        return Response({"on_duty": profile.on_duty, "is_available": profile.is_available})

    def post(self, request):
        require_driver(request.user)

        serializer = AvailabilitySerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        profile = registry.set_available(request.user.id, serializer.validated_data["is_available"])
        return Response({
            "message": "You are now available" if profile.is_available else "You are now offline",
            "on_duty": profile.on_duty,
            "is_available": profile.is_available,
        })


#    HTTP fallback for driver_location_update over WS.
class DriverLocationUpdateView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        profile = require_driver(request.user)
        return Response({
            "latitude": float(profile.current_latitude) if profile.current_latitude is not None else None,
            "longitude": float(profile.current_longitude) if profile.current_longitude is not None else None,
            "last_seen": profile.last_seen,
        })

    def post(self, request):
        require_driver(request.user)

        serializer = LocationUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        lat = serializer.validated_data["latitude"]
        lng = serializer.validated_data["longitude"]
        accepted = registry.update_location(
            request.user.id,
            Coordinates(lat, lng),
            serializer.validated_data.get("timestamp"),
        )
        if accepted:
            publish_driver_location(request.user.id, lat, lng)

        return Response({
            "message": "Location updated" if accepted else "Stale location ignored",
            "accepted": accepted,
            "latitude": lat,
            "longitude": lng,
        })
