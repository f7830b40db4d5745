import uuid
from datetime import datetime
from decimal import Decimal
from unittest.mock import patch

from django.core.cache import cache
from django.test import SimpleTestCase, TestCase
from django.urls import reverse
from django.utils import timezone
from rest_framework.test import APIClient

from accounts.models import User
from common.choices import CancelledBy, ChatRole, MessageStatus, PaymentMethod, RideStatus, VehicleClass
from common.utils.geo import Coordinates, Place
from drivers.models import DriverProfile
from services.dispatch import get_fare, request_ride
from services.pricing import FareCalculator
from services.ride_management import chat, ride_lifecycle
from services.ride_management.exceptions import (
	ActiveRideExistsError,
	DriverUnavailableError,
	ForbiddenError,
	InvalidCodeError,
	InvalidInputError,
	InvalidStateError,
	InvalidTransitionError,
	RideNotFoundError,
)
from services.ride_management.ride_lifecycle import (
	accept_ride,
	cancel_ride,
	complete_ride,
	create_ride,
	generate_verification_code,
	get_active_rides,
	get_ride_for_participant,
	get_ride_history,
	mark_en_route,
	rate_ride,
	start_ride,
)
from services.ride_management.transitions import ALLOWED_TRANSITIONS, can_transition, sources_for
from services.routing.route_client import RouteEstimate
from .models import ChatMessage, Ride

PICKUP = Place('Union Square', Coordinates(37.7880, -122.4075))
DESTINATION = Place('Ferry Building', Coordinates(37.7955, -122.3937))


def make_driver(username, vehicle_class=VehicleClass.ECONOMY, available=True):
	user = User.objects.create_user(
		username=username,
		password='driver1234',
		role='driver',
		phone_number='9000000001'
	)
	DriverProfile.objects.create(
		user=user,
		vehicle_number=f'CA-{username}',
		vehicle_class=vehicle_class,
		on_duty=available,
		is_available=available,
		current_latitude=37.7890,
		current_longitude=-122.4080,
		last_seen=timezone.now(),
	)
	return user


def quote():
	return FareCalculator().quote(5000, 600, datetime(2026, 3, 2, 8, 0))


def is_available(user):
	return DriverProfile.objects.get(user=user).is_available


class TransitionTableTests(SimpleTestCase):
	def test_every_status_has_an_entry(self):
		self.assertEqual(set(ALLOWED_TRANSITIONS), set(RideStatus.values))

	def test_terminal_states_have_no_exits(self):
		for status in (RideStatus.COMPLETED, RideStatus.CANCELLED):
			for target in RideStatus.values:
				self.assertFalse(can_transition(status, target))

	def test_cancel_only_before_pickup_starts(self):
		self.assertEqual(sources_for(RideStatus.CANCELLED), {RideStatus.REQUESTED, RideStatus.ACCEPTED})

	def test_no_way_back_to_requested(self):
		self.assertEqual(sources_for(RideStatus.REQUESTED), frozenset())

	def test_pickup_may_skip_on_the_way(self):
		self.assertTrue(can_transition(RideStatus.ACCEPTED, RideStatus.IN_PROGRESS))
		self.assertFalse(can_transition(RideStatus.REQUESTED, RideStatus.IN_PROGRESS))
		self.assertFalse(can_transition(RideStatus.ON_THE_WAY, RideStatus.CANCELLED))


class RideLifecycleTestBase(TestCase):
	def setUp(self):
		self.rider = User.objects.create_user(
			username='rider',
			password='pass1234',
			role='rider',
			phone_number='9000000000'
		)
		self.driver_one = make_driver('driver_one')
		self.driver_two = make_driver('driver_two')
		self.ride = create_ride(self.rider, PICKUP, DESTINATION, VehicleClass.ECONOMY, quote())


@patch('realtime.notifications.publish_ride_event')
class RideLifecycleTests(RideLifecycleTestBase):
	def test_created_ride(self, mock_publish):
		self.assertEqual(self.ride.status, RideStatus.REQUESTED)
		self.assertIsNone(self.ride.driver)
		self.assertEqual(self.ride.fare_amount, Decimal('110'))
		self.assertEqual(self.ride.surge_multiplier, Decimal('1.5'))
		self.assertEqual(len(self.ride.verification_code), 6)
		self.assertTrue(self.ride.verification_code.isdigit())

	def test_full_ride(self, mock_publish):
		with self.captureOnCommitCallbacks(execute=True):
			ride = accept_ride(self.ride.id, self.driver_one.id)
		self.assertEqual(ride.status, RideStatus.ACCEPTED)
		self.assertEqual(ride.driver, self.driver_one)
		self.assertIsNotNone(ride.accepted_at)
		self.assertIsNotNone(ride.estimated_arrival_at)
		self.assertFalse(is_available(self.driver_one))

		with self.captureOnCommitCallbacks(execute=True):
			ride = mark_en_route(ride.id, self.driver_one.id)
		self.assertEqual(ride.status, RideStatus.ON_THE_WAY)

		with self.captureOnCommitCallbacks(execute=True):
			ride = start_ride(ride.id, self.driver_one.id, self.ride.verification_code)
		self.assertEqual(ride.status, RideStatus.IN_PROGRESS)
		self.assertIsNotNone(ride.actual_arrival_at)

		with self.captureOnCommitCallbacks(execute=True):
			ride = complete_ride(ride.id, self.driver_one.id, PaymentMethod.CARD, '2.50')
		self.assertEqual(ride.status, RideStatus.COMPLETED)
		self.assertEqual(ride.payment_method, PaymentMethod.CARD)
		self.assertEqual(ride.tip, Decimal('2.50'))
		self.assertIsNotNone(ride.actual_end_at)
		self.assertEqual(ride.version, 4)
		self.assertTrue(is_available(self.driver_one))

		self.rider.refresh_from_db()
		self.driver_one.refresh_from_db()
		self.assertEqual(self.rider.completed_rides, 1)
		self.assertEqual(self.driver_one.completed_rides, 1)

		events = [c.args[0] for c in mock_publish.call_args_list]
		self.assertEqual(events, ['ride_accepted', 'ride_en_route', 'ride_started', 'ride_completed'])

	def test_start_directly_from_accepted(self, mock_publish):
		accept_ride(self.ride.id, self.driver_one.id)
		ride = start_ride(self.ride.id, self.driver_one.id, self.ride.verification_code)
		self.assertEqual(ride.status, RideStatus.IN_PROGRESS)

	def test_second_acceptor_loses(self, mock_publish):
		accept_ride(self.ride.id, self.driver_one.id)

		with self.assertRaises(RideNotFoundError):
			accept_ride(self.ride.id, self.driver_two.id)

		self.assertTrue(is_available(self.driver_two))
		self.ride.refresh_from_db()
		self.assertEqual(self.ride.driver, self.driver_one)

	def test_concurrent_acceptor_with_stale_read_is_rolled_back(self, mock_publish):
		stale = Ride.objects.get(pk=self.ride.pk)
		accept_ride(self.ride.id, self.driver_two.id)

		# driver_one read the ride before driver_two's write landed
		with patch.object(ride_lifecycle, '_lock_ride', return_value=stale):
			with self.captureOnCommitCallbacks(execute=True) as callbacks:
				with self.assertRaises(RideNotFoundError):
					accept_ride(self.ride.id, self.driver_one.id)

		self.assertEqual(callbacks, [])
		self.assertTrue(is_available(self.driver_one))
		self.assertFalse(is_available(self.driver_two))
		self.ride.refresh_from_db()
		self.assertEqual(self.ride.driver, self.driver_two)
		self.assertEqual(self.ride.version, 1)

	def test_unavailable_driver_cannot_accept(self, mock_publish):
		DriverProfile.objects.filter(user=self.driver_one).update(is_available=False)

		with self.assertRaises(DriverUnavailableError):
			accept_ride(self.ride.id, self.driver_one.id)

		self.ride.refresh_from_db()
		self.assertEqual(self.ride.status, RideStatus.REQUESTED)

	def test_driver_with_ride_cannot_accept_another(self, mock_publish):
		accept_ride(self.ride.id, self.driver_one.id)
		other_rider = User.objects.create_user(username='other', password='pass1234', role='rider')
		other = create_ride(other_rider, PICKUP, DESTINATION, VehicleClass.ECONOMY, quote())

		with self.assertRaises(DriverUnavailableError):
			accept_ride(other.id, self.driver_one.id)

	def test_wrong_code_leaves_ride_unchanged(self, mock_publish):
		accept_ride(self.ride.id, self.driver_one.id)
		wrong = '000000' if self.ride.verification_code != '000000' else '111111'

		with self.assertRaises(InvalidCodeError):
			start_ride(self.ride.id, self.driver_one.id, wrong)

		self.ride.refresh_from_db()
		self.assertEqual(self.ride.status, RideStatus.ACCEPTED)
		self.assertEqual(self.ride.version, 1)

	def test_missing_code_rejected(self, mock_publish):
		accept_ride(self.ride.id, self.driver_one.id)
		with self.assertRaises(InvalidCodeError):
			start_ride(self.ride.id, self.driver_one.id, None)

	def test_only_assigned_driver_progresses_ride(self, mock_publish):
		accept_ride(self.ride.id, self.driver_one.id)
		with self.assertRaises(ForbiddenError):
			mark_en_route(self.ride.id, self.driver_two.id)
		with self.assertRaises(ForbiddenError):
			start_ride(self.ride.id, self.driver_two.id, self.ride.verification_code)
		with self.assertRaises(ForbiddenError):
			complete_ride(self.ride.id, self.driver_two.id, PaymentMethod.CASH)

	def test_cannot_skip_pickup(self, mock_publish):
		accept_ride(self.ride.id, self.driver_one.id)
		with self.assertRaises(InvalidTransitionError):
			complete_ride(self.ride.id, self.driver_one.id, PaymentMethod.CASH)

	def test_en_route_only_once(self, mock_publish):
		accept_ride(self.ride.id, self.driver_one.id)
		mark_en_route(self.ride.id, self.driver_one.id)
		with self.assertRaises(InvalidTransitionError):
			mark_en_route(self.ride.id, self.driver_one.id)

	def test_invalid_settlement(self, mock_publish):
		accept_ride(self.ride.id, self.driver_one.id)
		start_ride(self.ride.id, self.driver_one.id, self.ride.verification_code)
		with self.assertRaises(InvalidInputError):
			complete_ride(self.ride.id, self.driver_one.id, 'barter')
		with self.assertRaises(InvalidInputError):
			complete_ride(self.ride.id, self.driver_one.id, PaymentMethod.CASH, tip='-1')
		with self.assertRaises(InvalidInputError):
			complete_ride(self.ride.id, self.driver_one.id, PaymentMethod.CASH, tip='lots')

	def test_unknown_ride(self, mock_publish):
		with self.assertRaises(RideNotFoundError):
			accept_ride(uuid.uuid4(), self.driver_one.id)
		with self.assertRaises(RideNotFoundError):
			accept_ride('not-a-uuid', self.driver_one.id)


@patch('realtime.notifications.publish_ride_event')
class CancelRideTests(RideLifecycleTestBase):
	def test_rider_cancels_requested_ride(self, mock_publish):
		with self.captureOnCommitCallbacks(execute=True):
			result = cancel_ride(self.ride.id, self.rider.id, 'Changed plans')

		ride = result.ride
		self.assertEqual(ride.status, RideStatus.CANCELLED)
		self.assertEqual(ride.cancelled_by, CancelledBy.RIDER)
		self.assertEqual(ride.cancellation_reason, 'Changed plans')
		self.assertIsNotNone(ride.cancelled_at)
		self.assertFalse(result.extra['was_assigned'])
		mock_publish.assert_called_once()
		self.assertEqual(mock_publish.call_args.args[0], 'ride_cancelled')

	def test_driver_cancel_releases_driver(self, mock_publish):
		accept_ride(self.ride.id, self.driver_one.id)

		with self.captureOnCommitCallbacks(execute=True):
			result = cancel_ride(self.ride.id, self.driver_one.id)

		self.assertEqual(result.ride.cancelled_by, CancelledBy.DRIVER)
		self.assertIsNone(result.ride.driver)
		self.assertTrue(is_available(self.driver_one))
		self.assertEqual(mock_publish.call_args.kwargs['driver_id'], self.driver_one.id)

	def test_system_cancel(self, mock_publish):
		result = cancel_ride(self.ride.id)
		self.assertEqual(result.ride.cancelled_by, CancelledBy.SYSTEM)

	def test_stranger_cannot_cancel(self, mock_publish):
		with self.assertRaises(ForbiddenError):
			cancel_ride(self.ride.id, self.driver_two.id)

	def test_cannot_cancel_once_started(self, mock_publish):
		accept_ride(self.ride.id, self.driver_one.id)
		start_ride(self.ride.id, self.driver_one.id, self.ride.verification_code)

		with self.assertRaises(InvalidTransitionError):
			cancel_ride(self.ride.id, self.rider.id)
		self.assertFalse(is_available(self.driver_one))

	def test_cannot_cancel_twice(self, mock_publish):
		cancel_ride(self.ride.id, self.rider.id)
		with self.assertRaises(InvalidTransitionError):
			cancel_ride(self.ride.id, self.rider.id)

	def test_cancelled_ride_cannot_be_accepted(self, mock_publish):
		cancel_ride(self.ride.id, self.rider.id)
		with self.assertRaises(RideNotFoundError):
			accept_ride(self.ride.id, self.driver_one.id)
		self.assertTrue(is_available(self.driver_one))


@patch('realtime.notifications.notify_new_rating')
@patch('realtime.notifications.publish_ride_event')
class RateRideTests(RideLifecycleTestBase):
	def finish(self):
		accept_ride(self.ride.id, self.driver_one.id)
		start_ride(self.ride.id, self.driver_one.id, self.ride.verification_code)
		complete_ride(self.ride.id, self.driver_one.id, PaymentMethod.CASH)

	def test_rate_completed_ride(self, mock_publish, mock_rating):
		self.finish()
		with self.captureOnCommitCallbacks(execute=True):
			ride = rate_ride(self.ride.id, self.rider.id, 5, 'Smooth ride')

		self.assertEqual(ride.rating, 5)
		self.assertEqual(ride.review, 'Smooth ride')
		mock_rating.assert_called_once()

	def test_rate_only_once(self, mock_publish, mock_rating):
		self.finish()
		rate_ride(self.ride.id, self.rider.id, 4)
		with self.assertRaises(InvalidStateError):
			rate_ride(self.ride.id, self.rider.id, 5)

	def test_rate_unfinished_ride(self, mock_publish, mock_rating):
		with self.assertRaises(InvalidStateError):
			rate_ride(self.ride.id, self.rider.id, 5)

	def test_rate_out_of_range(self, mock_publish, mock_rating):
		self.finish()
		for rating in (0, 6, 4.5, '5', True):
			with self.assertRaises(InvalidInputError):
				rate_ride(self.ride.id, self.rider.id, rating)

	def test_only_rider_rates(self, mock_publish, mock_rating):
		self.finish()
		with self.assertRaises(ForbiddenError):
			rate_ride(self.ride.id, self.driver_one.id, 5)


class RideQueryTests(RideLifecycleTestBase):
	def test_single_active_ride_per_rider(self):
		with self.assertRaises(ActiveRideExistsError):
			create_ride(self.rider, PICKUP, DESTINATION, VehicleClass.ECONOMY, quote())

	def test_new_ride_after_cancel(self):
		cancel_ride(self.ride.id, self.rider.id)
		ride = create_ride(self.rider, PICKUP, DESTINATION, VehicleClass.PREMIUM, quote())
		self.assertEqual(ride.fare_amount, Decimal('230'))

	def test_create_requires_quote_and_valid_input(self):
		cancel_ride(self.ride.id, self.rider.id)
		with self.assertRaises(InvalidInputError):
			create_ride(self.rider, PICKUP, DESTINATION, VehicleClass.ECONOMY, None)
		with self.assertRaises(InvalidInputError):
			create_ride(self.rider, PICKUP, DESTINATION, 'limo', quote())
		with self.assertRaises(InvalidInputError):
			create_ride(self.rider, Place('Nowhere', Coordinates(100, 0)), DESTINATION, VehicleClass.ECONOMY, quote())

	def test_participant_visibility(self):
		self.assertEqual(get_ride_for_participant(self.ride.id, self.rider.id), self.ride)
		with self.assertRaises(ForbiddenError):
			get_ride_for_participant(self.ride.id, self.driver_one.id)

		accept_ride(self.ride.id, self.driver_one.id)
		self.assertEqual(get_ride_for_participant(self.ride.id, self.driver_one.id), self.ride)

	def test_active_and_history(self):
		self.assertEqual(get_active_rides(self.rider.id), [self.ride])
		self.assertEqual(get_ride_history(self.rider.id), [])

		cancel_ride(self.ride.id, self.rider.id)

		self.assertEqual(get_active_rides(self.rider.id), [])
		self.assertEqual(get_ride_history(self.rider.id), [self.ride])

	def test_verification_codes_are_six_digits(self):
		for _ in range(50):
			code = generate_verification_code()
			self.assertRegex(code, r'^\d{6}$')


@patch('realtime.notifications.notify_chat_typing', return_value=True)
@patch('realtime.notifications.notify_chat_initiated')
@patch('realtime.notifications.notify_chat_read')
@patch('realtime.notifications.publish_chat_message')
@patch('realtime.notifications.publish_ride_event')
class RideChatTests(RideLifecycleTestBase):
	def setUp(self):
		super().setUp()
		accept_ride(self.ride.id, self.driver_one.id)

	def test_participants_exchange_messages(self, mock_event, mock_publish, mock_read, mock_initiated, mock_typing):
		with self.captureOnCommitCallbacks(execute=True):
			first = chat.send_message(self.ride.id, self.rider.id, '  I am by the fountain  ')
		with self.captureOnCommitCallbacks(execute=True):
			second = chat.send_message(self.ride.id, self.driver_one.id, 'Two minutes away')

		self.assertEqual(first.text, 'I am by the fountain')
		self.assertEqual(first.sender_role, ChatRole.RIDER)
		self.assertEqual(second.sender_role, ChatRole.DRIVER)
		self.assertEqual(mock_publish.call_count, 2)
		self.assertEqual(chat.get_chat_history(self.ride.id, self.driver_one.id), [first, second])

	def test_outsiders_cannot_read_or_write(self, mock_event, mock_publish, mock_read, mock_initiated, mock_typing):
		with self.assertRaises(ForbiddenError):
			chat.send_message(self.ride.id, self.driver_two.id, 'Hello?')
		with self.assertRaises(ForbiddenError):
			chat.get_chat_history(self.ride.id, self.driver_two.id)
		with self.assertRaises(RideNotFoundError):
			chat.send_message(uuid.uuid4(), self.rider.id, 'Hello?')
		self.assertFalse(ChatMessage.objects.exists())

	def test_chat_needs_an_assigned_driver(self, mock_event, mock_publish, mock_read, mock_initiated, mock_typing):
		other_rider = User.objects.create_user(username='other', password='pass1234', role='rider')
		waiting = create_ride(other_rider, PICKUP, DESTINATION, VehicleClass.ECONOMY, quote())

		with self.assertRaises(InvalidStateError):
			chat.send_message(waiting.id, other_rider.id, 'Anyone?')

	def test_closed_after_ride_ends_but_history_stays(self, mock_event, mock_publish, mock_read, mock_initiated, mock_typing):
		message = chat.send_message(self.ride.id, self.rider.id, 'See you soon')
		start_ride(self.ride.id, self.driver_one.id, self.ride.verification_code)
		complete_ride(self.ride.id, self.driver_one.id, PaymentMethod.CARD)

		with self.assertRaises(InvalidStateError):
			chat.send_message(self.ride.id, self.rider.id, 'Thanks!')
		self.assertEqual(chat.get_chat_history(self.ride.id, self.rider.id), [message])

	def test_invalid_text(self, mock_event, mock_publish, mock_read, mock_initiated, mock_typing):
		for text in ('', '   ', None, 42, 'x' * 1001):
			with self.assertRaises(InvalidInputError):
				chat.send_message(self.ride.id, self.rider.id, text)
		self.assertFalse(ChatMessage.objects.exists())

	def test_mark_read_only_touches_the_other_side(self, mock_event, mock_publish, mock_read, mock_initiated, mock_typing):
		from_driver = chat.send_message(self.ride.id, self.driver_one.id, 'Here')
		from_rider = chat.send_message(self.ride.id, self.rider.id, 'Coming')

		with self.captureOnCommitCallbacks(execute=True):
			ids = chat.mark_read(self.ride.id, self.rider.id)

		self.assertEqual(ids, [from_driver.id])
		from_driver.refresh_from_db()
		from_rider.refresh_from_db()
		self.assertEqual(from_driver.status, MessageStatus.READ)
		self.assertIsNotNone(from_driver.read_at)
		self.assertEqual(from_rider.status, MessageStatus.SENT)
		mock_read.assert_called_once()
		self.assertEqual(mock_read.call_args[0][1:], (self.rider.id, [from_driver.id]))

		self.assertEqual(chat.mark_read(self.ride.id, self.rider.id), [])

	def test_mark_read_selected_ids(self, mock_event, mock_publish, mock_read, mock_initiated, mock_typing):
		first = chat.send_message(self.ride.id, self.driver_one.id, 'Here')
		chat.send_message(self.ride.id, self.driver_one.id, 'Blue car')

		self.assertEqual(chat.mark_read(self.ride.id, self.rider.id, [first.id]), [first.id])
		with self.assertRaises(InvalidInputError):
			chat.mark_read(self.ride.id, self.rider.id, 'all')

	def test_driver_initiates_chat(self, mock_event, mock_publish, mock_read, mock_initiated, mock_typing):
		with self.captureOnCommitCallbacks(execute=True):
			message = chat.initiate_chat(self.ride.id, self.driver_one.id)

		self.assertEqual(message.text, chat.DRIVER_GREETING)
		self.assertEqual(message.sender_role, ChatRole.DRIVER)
		mock_publish.assert_called_once()
		mock_initiated.assert_called_once()

		with self.assertRaises(ForbiddenError):
			chat.initiate_chat(self.ride.id, self.rider.id)

	def test_typing_is_relayed_not_stored(self, mock_event, mock_publish, mock_read, mock_initiated, mock_typing):
		self.assertTrue(chat.set_typing(self.ride.id, self.rider.id, 1))

		ride, user_id, is_typing = mock_typing.call_args[0]
		self.assertEqual((ride.id, user_id, is_typing), (self.ride.id, self.rider.id, True))
		self.assertFalse(ChatMessage.objects.exists())


@patch('realtime.notifications.fan_out_new_ride')
@patch('services.dispatch.orchestrator.get_route_client')
class RequestRideTests(TestCase):
	def setUp(self):
		cache.clear()
		self.rider = User.objects.create_user(username='rider', password='pass1234', role='rider')
		self.driver = make_driver('driver')
		self.peak = timezone.make_aware(datetime(2026, 3, 2, 8, 0))

	def tearDown(self):
		cache.clear()

	def test_request_ride_quotes_creates_and_fans_out(self, mock_client, mock_fan_out):
		mock_client.return_value.route.return_value = RouteEstimate(5000, 600)

		with self.captureOnCommitCallbacks(execute=True):
			result = request_ride(
				self.rider,
				{'address': 'Union Square', 'lat': 37.7880, 'lng': -122.4075},
				{'address': 'Ferry Building', 'lat': 37.7955, 'lng': -122.3937},
				VehicleClass.ECONOMY,
				now=self.peak,
			)

		self.assertEqual(result.ride.fare_amount, Decimal('110'))
		self.assertEqual(result.ride.pickup_address, 'Union Square')
		self.assertEqual(result.extra['driver_candidates'], 1)
		mock_fan_out.assert_called_once_with(result.ride, [self.driver.id])

	def test_no_drivers_still_creates_ride(self, mock_client, mock_fan_out):
		mock_client.return_value.route.return_value = RouteEstimate(5000, 600)

		with self.captureOnCommitCallbacks(execute=True):
			result = request_ride(self.rider, PICKUP, DESTINATION, VehicleClass.PREMIUM, now=self.peak)

		self.assertEqual(result.extra['driver_candidates'], 0)
		self.assertEqual(result.ride.status, RideStatus.REQUESTED)
		mock_fan_out.assert_called_once_with(result.ride, [])

	def test_fallback_route_source_reported(self, mock_client, mock_fan_out):
		mock_client.return_value.route.return_value = RouteEstimate(5000, 600, 'fallback')
		result = request_ride(self.rider, PICKUP, DESTINATION, VehicleClass.ECONOMY, now=self.peak)
		self.assertEqual(result.extra['route_source'], 'fallback')

	def test_invalid_input_creates_nothing(self, mock_client, mock_fan_out):
		with self.assertRaises(InvalidInputError):
			request_ride(self.rider, {'lat': 'x', 'lng': 0}, DESTINATION, VehicleClass.ECONOMY)
		with self.assertRaises(InvalidInputError):
			request_ride(self.rider, PICKUP, DESTINATION, 'hovercraft')

		self.assertFalse(Ride.objects.exists())
		mock_client.return_value.route.assert_not_called()

	def test_drivers_cannot_request(self, mock_client, mock_fan_out):
		with self.assertRaises(ForbiddenError):
			request_ride(self.driver, PICKUP, DESTINATION, VehicleClass.ECONOMY)

	def test_fare_quotes_are_cached_per_hour(self, mock_client, mock_fan_out):
		mock_client.return_value.route.return_value = RouteEstimate(5000, 600)

		first = get_fare(PICKUP, DESTINATION, now=self.peak)
		second = get_fare(PICKUP, DESTINATION, now=self.peak.replace(minute=45))

		self.assertEqual(first, second)
		self.assertEqual(mock_client.return_value.route.call_count, 1)

	def test_naive_request_time_is_read_as_local_time(self, mock_client, mock_fan_out):
		mock_client.return_value.route.return_value = RouteEstimate(5000, 600)

		naive = get_fare(PICKUP, DESTINATION, now=datetime(2026, 3, 2, 8, 0))

		self.assertEqual(naive, get_fare(PICKUP, DESTINATION, now=self.peak))
		self.assertEqual(naive.amounts[VehicleClass.ECONOMY], 110)
		self.assertEqual(mock_client.return_value.route.call_count, 1)


@patch('realtime.notifications.fan_out_new_ride')
@patch('realtime.notifications.publish_ride_event')
@patch('services.dispatch.orchestrator.get_route_client')
class RideApiTests(TestCase):
	def setUp(self):
		cache.clear()
		self.client = APIClient()
		self.rider = User.objects.create_user(username='rider', password='pass1234', role='rider')
		self.driver = make_driver('driver')
		self.payload = {
			'pickup': {'address': 'Union Square', 'lat': 37.7880, 'lng': -122.4075},
			'destination': {'address': 'Ferry Building', 'lat': 37.7955, 'lng': -122.3937},
			'vehicle_class': 'economy',
		}

	def tearDown(self):
		cache.clear()

	def request_ride(self):
		self.client.force_authenticate(user=self.rider)
		return self.client.post(reverse('rides:create-ride'), self.payload, format='json')

	def test_ride_through_http(self, mock_client, mock_publish, mock_fan_out):
		mock_client.return_value.route.return_value = RouteEstimate(5000, 600)

		response = self.request_ride()
		self.assertEqual(response.status_code, 201)
		self.assertEqual(response.data['driver_candidates'], 1)
		ride_id = response.data['ride']['id']
		code = response.data['ride']['verification_code']

		self.client.force_authenticate(user=self.driver)
		response = self.client.post(reverse('rides:confirm-ride', args=[ride_id]))
		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['ride']['status'], 'accepted')
		self.assertNotIn('verification_code', response.data['ride'])
		self.assertEqual(response.data['ride']['driver']['id'], self.driver.id)

		response = self.client.post(reverse('rides:start-ride', args=[ride_id]), {'verification_code': code}, format='json')
		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['ride']['status'], 'in-progress')

		response = self.client.post(
			reverse('rides:end-ride', args=[ride_id]),
			{'payment_method': 'cash', 'tip': '5.00'},
			format='json',
		)
		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['ride']['status'], 'completed')

		self.client.force_authenticate(user=self.rider)
		response = self.client.post(reverse('rides:rate-ride', args=[ride_id]), {'rating': 5}, format='json')
		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['ride']['rating'], 5)

		response = self.client.get(reverse('rides:ride-history'))
		self.assertEqual(len(response.data['rides']), 1)

	def test_fare_estimate(self, mock_client, mock_publish, mock_fan_out):
		mock_client.return_value.route.return_value = RouteEstimate(5000, 600)
		self.client.force_authenticate(user=self.rider)

		response = self.client.post(reverse('rides:fare'), {
			'pickup': self.payload['pickup'],
			'destination': self.payload['destination'],
		}, format='json')

		self.assertEqual(response.status_code, 200)
		self.assertEqual(set(response.data['fares']), {'economy', 'standard', 'premium'})
		self.assertEqual(response.data['route_source'], 'provider')

	def test_second_request_conflicts(self, mock_client, mock_publish, mock_fan_out):
		mock_client.return_value.route.return_value = RouteEstimate(5000, 600)
		self.request_ride()

		response = self.request_ride()

		self.assertEqual(response.status_code, 409)
		self.assertEqual(response.data['code'], 'active_ride_exists')

	def test_wrong_code_over_http(self, mock_client, mock_publish, mock_fan_out):
		mock_client.return_value.route.return_value = RouteEstimate(5000, 600)
		response = self.request_ride()
		ride_id = response.data['ride']['id']
		code = response.data['ride']['verification_code']

		self.client.force_authenticate(user=self.driver)
		self.client.post(reverse('rides:confirm-ride', args=[ride_id]))
		wrong = '000000' if code != '000000' else '111111'
		response = self.client.post(reverse('rides:start-ride', args=[ride_id]), {'verification_code': wrong}, format='json')

		self.assertEqual(response.status_code, 400)
		self.assertEqual(response.data['code'], 'invalid_code')

	def test_riders_cannot_confirm(self, mock_client, mock_publish, mock_fan_out):
		mock_client.return_value.route.return_value = RouteEstimate(5000, 600)
		ride_id = self.request_ride().data['ride']['id']

		response = self.client.post(reverse('rides:confirm-ride', args=[ride_id]))

		self.assertEqual(response.status_code, 403)

	def test_detail_hidden_from_strangers(self, mock_client, mock_publish, mock_fan_out):
		mock_client.return_value.route.return_value = RouteEstimate(5000, 600)
		ride_id = self.request_ride().data['ride']['id']

		self.client.force_authenticate(user=self.driver)
		self.assertEqual(self.client.get(reverse('rides:ride-detail', args=[ride_id])).status_code, 403)
		self.assertEqual(self.client.get(reverse('rides:ride-detail', args=[uuid.uuid4()])).status_code, 404)

	def test_cancel_over_http(self, mock_client, mock_publish, mock_fan_out):
		mock_client.return_value.route.return_value = RouteEstimate(5000, 600)
		ride_id = self.request_ride().data['ride']['id']

		response = self.client.post(reverse('rides:cancel-ride', args=[ride_id]), {'reason': 'Too slow'}, format='json')

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['ride']['status'], 'cancelled')
		self.assertEqual(response.data['ride']['cancelled_by'], 'rider')

	def test_requires_authentication(self, mock_client, mock_publish, mock_fan_out):
		response = self.client.post(reverse('rides:create-ride'), self.payload, format='json')
		self.assertEqual(response.status_code, 401)

	def test_invalid_payload(self, mock_client, mock_publish, mock_fan_out):
		self.client.force_authenticate(user=self.rider)
		payload = dict(self.payload, vehicle_class='spaceship')
		response = self.client.post(reverse('rides:create-ride'), payload, format='json')
		self.assertEqual(response.status_code, 400)


@patch('realtime.notifications.notify_chat_read')
@patch('realtime.notifications.publish_chat_message')
@patch('realtime.notifications.publish_ride_event')
class RideChatApiTests(RideLifecycleTestBase):
	def setUp(self):
		super().setUp()
		self.client = APIClient()
		accept_ride(self.ride.id, self.driver_one.id)
		self.url = reverse('rides:ride-messages', args=[self.ride.id])

	def test_send_and_list_messages(self, mock_event, mock_publish, mock_read):
		self.client.force_authenticate(user=self.rider)
		response = self.client.post(self.url, {'text': 'Blue jacket, by the door'}, format='json')

		self.assertEqual(response.status_code, 201)
		self.assertEqual(response.data['sender_role'], 'rider')
		self.assertEqual(response.data['status'], 'sent')

		self.client.force_authenticate(user=self.driver_one)
		response = self.client.get(self.url)
		self.assertEqual(response.status_code, 200)
		self.assertEqual([m['text'] for m in response.data['messages']], ['Blue jacket, by the door'])

		response = self.client.post(reverse('rides:ride-messages-read', args=[self.ride.id]), {}, format='json')
		self.assertEqual(response.status_code, 200)
		self.assertEqual(len(response.data['message_ids']), 1)

	def test_outsider_forbidden(self, mock_event, mock_publish, mock_read):
		self.client.force_authenticate(user=self.driver_two)
		self.assertEqual(self.client.get(self.url).status_code, 403)
		response = self.client.post(self.url, {'text': 'Hi'}, format='json')
		self.assertEqual(response.status_code, 403)
		self.assertEqual(response.data['code'], 'forbidden')

	def test_blank_and_oversized_text_rejected(self, mock_event, mock_publish, mock_read):
		self.client.force_authenticate(user=self.rider)
		self.assertEqual(self.client.post(self.url, {'text': ''}, format='json').status_code, 400)
		self.assertEqual(self.client.post(self.url, {'text': 'x' * 1001}, format='json').status_code, 400)
		self.assertFalse(ChatMessage.objects.exists())

	def test_unauthenticated(self, mock_event, mock_publish, mock_read):
		self.assertEqual(self.client.get(self.url).status_code, 401)


@patch('rides.views.get_route_client')
class MapsApiTests(TestCase):
	def setUp(self):
		self.client = APIClient()
		self.user = User.objects.create_user(username='rider', password='pass1234', role='rider')
		self.client.force_authenticate(user=self.user)

	def test_route(self, mock_client):
		mock_client.return_value.route.return_value = RouteEstimate(1200, 180)
		response = self.client.get(reverse('maps:route'), {
			'origin_lat': 37.788, 'origin_lng': -122.4075,
			'destination_lat': 37.7955, 'destination_lng': -122.3937,
		})
		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data, {'distance_meters': 1200, 'duration_seconds': 180, 'source': 'provider'})

	def test_route_requires_numbers(self, mock_client):
		response = self.client.get(reverse('maps:route'), {'origin_lat': 'north'})
		self.assertEqual(response.status_code, 400)

	def test_suggestions_limit_clamped(self, mock_client):
		mock_client.return_value.autocomplete.return_value = []
		response = self.client.get(reverse('maps:suggestions'), {'input': 'market', 'limit': 50})
		self.assertEqual(response.status_code, 200)
		self.assertEqual(mock_client.return_value.autocomplete.call_args.kwargs['limit'], 10)
