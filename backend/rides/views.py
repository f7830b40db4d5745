from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated

from services.dispatch import get_fare, request_ride
from services.ride_management import (
    accept_ride,
    cancel_ride,
    complete_ride,
    get_active_rides,
    get_ride_for_participant,
    get_ride_history,
    mark_en_route,
    rate_ride,
    start_ride,
)
from services.ride_management import chat
from services.ride_management.exceptions import ForbiddenError, InvalidInputError
from services.routing import get_route_client
from .serializers import (
    ChatMessageCreateSerializer,
    ChatMessageSerializer,
    ChatReadSerializer,
    EndRideSerializer,
    FareRequestSerializer,
    RateRideSerializer,
    RideCancelSerializer,
    RideCreateSerializer,
    StartRideSerializer,
    serialize_ride_for,
)

HISTORY_LIMIT = 50


def _require_driver(user):
    if not user.is_driver:
        raise ForbiddenError("Only drivers can do this")


def _ride_response(ride, user, message="", status_code=status.HTTP_200_OK, **extra):
    body = {"ride": serialize_ride_for(ride, user.id), **extra}
    if message:
        body["message"] = message
    return Response(body, status=status_code)


# ==================== Rider Ride APIs ====================

@api_view(['POST'])
@permission_classes([IsAuthenticated])
def create_ride(request):
    """Request a ride: quote the fare, create it and notify eligible drivers"""
    serializer = RideCreateSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = serializer.validated_data

    result = request_ride(
        request.user,
        pickup=data['pickup'],
        destination=data['destination'],
        vehicle_class=data['vehicle_class'],
    )
    return _ride_response(
        result.ride,
        request.user,
        result.message,
        status.HTTP_201_CREATED,
        driver_candidates=result.extra['driver_candidates'],
    )


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def fare_estimate(request):
    """Per-class fares for a pickup/destination pair"""
    serializer = FareRequestSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    quote = get_fare(serializer.validated_data['pickup'], serializer.validated_data['destination'])
    return Response(quote.as_dict())


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def cancel(request, ride_id):
    """Cancel a ride (rider, or the assigned driver before pickup)"""
    serializer = RideCancelSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    result = cancel_ride(ride_id, request.user.id, serializer.validated_data['reason'])
    return _ride_response(result.ride, request.user, result.message)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def rate(request, ride_id):
    """Rate a completed ride"""
    serializer = RateRideSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    ride = rate_ride(
        ride_id,
        request.user.id,
        serializer.validated_data['rating'],
        serializer.validated_data['review'],
    )
    return _ride_response(ride, request.user, "Thanks for your feedback")


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def ride_detail(request, ride_id):
    ride = get_ride_for_participant(ride_id, request.user.id)
    return _ride_response(ride, request.user)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def active_rides(request):
    """Current non-terminal rides of the user, as rider or driver"""
    rides = get_active_rides(request.user.id)
    return Response({"rides": [serialize_ride_for(ride, request.user.id) for ride in rides]})


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def ride_history(request):
    """Completed and cancelled rides, newest first"""
    rides = get_ride_history(request.user.id, limit=HISTORY_LIMIT)
    return Response({"rides": [serialize_ride_for(ride, request.user.id) for ride in rides]})


# ==================== Driver Ride Actions ====================

@api_view(['POST'])
@permission_classes([IsAuthenticated])
def confirm(request, ride_id):
    """Driver accepts a requested ride"""
    _require_driver(request.user)
    ride = accept_ride(ride_id, request.user.id)
    return _ride_response(ride, request.user, "Ride accepted! Navigate to pickup location.")


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def en_route(request, ride_id):
    _require_driver(request.user)
    ride = mark_en_route(ride_id, request.user.id)
    return _ride_response(ride, request.user)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def start(request, ride_id):
    """Driver starts the ride with the rider's verification code"""
    _require_driver(request.user)
    serializer = StartRideSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    ride = start_ride(ride_id, request.user.id, serializer.validated_data['verification_code'])
    return _ride_response(ride, request.user, "Ride started")


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def end(request, ride_id):
    """Driver completes the ride and records payment"""
    _require_driver(request.user)
    serializer = EndRideSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    ride = complete_ride(
        ride_id,
        request.user.id,
        serializer.validated_data['payment_method'],
        serializer.validated_data['tip'],
    )
    return _ride_response(ride, request.user, "Ride completed")


# ==================== Ride Chat ====================

@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def chat_messages(request, ride_id):
    """Chat history of a ride, or send a message to the other participant"""
    if request.method == 'GET':
        messages = chat.get_chat_history(ride_id, request.user.id)
        return Response({"messages": ChatMessageSerializer(messages, many=True).data})

    serializer = ChatMessageCreateSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    message = chat.send_message(ride_id, request.user.id, serializer.validated_data['text'])
    return Response(ChatMessageSerializer(message).data, status=status.HTTP_201_CREATED)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def chat_read(request, ride_id):
    serializer = ChatReadSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    ids = chat.mark_read(ride_id, request.user.id, serializer.validated_data.get('message_ids'))
    return Response({"message_ids": ids})


# ==================== Maps ====================

@api_view(['GET'])
@permission_classes([IsAuthenticated])
def geocode(request):
    address = request.query_params.get('address', '')
    return Response(get_route_client().geocode(address))


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def suggestions(request):
    """Address autocomplete; short or failing queries give an empty list"""
    params = request.query_params
    try:
        limit = min(max(int(params.get('limit', 5)), 1), 10)
    except ValueError:
        raise InvalidInputError("limit must be an integer")

    results = get_route_client().autocomplete(
        params.get('input', ''),
        limit=limit,
        country=params.get('country') or None,
        feature_type=params.get('type', 'all'),
    )
    return Response({"suggestions": results})


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def route(request):
    """Distance and duration between two points"""
    params = request.query_params
    try:
        origin = {"lat": float(params['origin_lat']), "lng": float(params['origin_lng'])}
        destination = {"lat": float(params['destination_lat']), "lng": float(params['destination_lng'])}
    except (KeyError, ValueError):
        raise InvalidInputError("origin_lat, origin_lng, destination_lat and destination_lng are required numbers")

    return Response(get_route_client().route(origin, destination).as_dict())
