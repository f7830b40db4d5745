from unittest.mock import AsyncMock, Mock, patch

from channels.db import database_sync_to_async
from channels.layers import get_channel_layer
from channels.testing import WebsocketCommunicator
from django.contrib.auth.models import AnonymousUser
from django.test import TestCase, TransactionTestCase
from django.utils import timezone
from rest_framework_simplejwt.tokens import AccessToken

from accounts.models import User
from common.choices import RideStatus, VehicleClass
from common.utils.geo import Coordinates, Place
from drivers.models import DriverProfile
from rides.models import ChatMessage, Ride
from services.pricing import FareCalculator
from services.ride_management.ride_lifecycle import accept_ride, create_ride

from .consumers import DriverConsumer, RideConsumer
from .middleware import JWTAuthMiddleware
from .notifications import (
	driver_group,
	fan_out_new_ride,
	notify_chat_read,
	notify_chat_typing,
	notify_new_rating,
	publish_chat_message,
	publish_driver_location,
	publish_ride_event,
	user_group,
)
from .presence import PRESENCE_KEY_PREFIX, PresenceStore

PICKUP = Place('Union Square', Coordinates(37.7880, -122.4075))
DESTINATION = Place('Ferry Building', Coordinates(37.7955, -122.3937))


class FakeChannelLayer:
	"""Records group sends; selected groups fail."""

	def __init__(self, failing=()):
		self.sent = []
		self.failing = set(failing)

	async def group_send(self, group, message):
		if group in self.failing:
			raise RuntimeError('layer down')
		self.sent.append((group, message))

	def groups(self):
		return [group for group, _ in self.sent]


def make_driver(username, available=True):
	user = User.objects.create_user(username=username, password='driver1234', role='driver')
	DriverProfile.objects.create(
		user=user,
		vehicle_number=f'CA-{username}',
		vehicle_class=VehicleClass.ECONOMY,
		on_duty=available,
		is_available=available,
		current_latitude=37.7890,
		current_longitude=-122.4080,
		last_seen=timezone.now(),
	)
	return user


def make_ride(rider):
	quote = FareCalculator().quote(5000, 600, timezone.now())
	return create_ride(rider, PICKUP, DESTINATION, VehicleClass.ECONOMY, quote)


class NotificationTests(TestCase):
	def setUp(self):
		self.rider = User.objects.create_user(username='rider', password='pass1234', role='rider')
		self.drivers = [make_driver(f'driver_{i}') for i in range(3)]
		self.ride = make_ride(self.rider)

	def test_fan_out_survives_one_failed_delivery(self):
		layer = FakeChannelLayer(failing={driver_group(self.drivers[1].id)})
		with patch('realtime.notifications.get_channel_layer', return_value=layer):
			delivered = fan_out_new_ride(self.ride, [d.id for d in self.drivers])

		self.assertEqual(delivered, 2)
		offers = [(group, message) for group, message in layer.sent if message['type'] == 'new_ride']
		self.assertEqual([group for group, _ in offers], [driver_group(self.drivers[0].id), driver_group(self.drivers[2].id)])
		for _, message in offers:
			self.assertNotIn('verification_code', message['ride_data'])

	def test_fan_out_tells_rider_how_many_drivers_were_asked(self):
		layer = FakeChannelLayer()
		with patch('realtime.notifications.get_channel_layer', return_value=layer):
			fan_out_new_ride(self.ride, [d.id for d in self.drivers])

		group, message = layer.sent[-1]
		self.assertEqual(group, user_group(self.rider.id))
		self.assertEqual(message['type'], 'ride_requested')
		self.assertEqual(message['drivers_notified'], 3)
		self.assertEqual(message['ride_data']['verification_code'], self.ride.verification_code)
		self.assertEqual(layer.groups().count(user_group(self.rider.id)), 1)

	def test_fan_out_without_drivers_tells_rider(self):
		layer = FakeChannelLayer()
		with patch('realtime.notifications.get_channel_layer', return_value=layer):
			delivered = fan_out_new_ride(self.ride, [])

		self.assertEqual(delivered, 0)
		self.assertEqual(layer.groups(), [user_group(self.rider.id)])
		self.assertEqual(layer.sent[0][1]['type'], 'no_drivers_available')

	def test_ride_event_reaches_rider_and_driver_once(self):
		driver = self.drivers[0]
		ride = accept_ride(self.ride.id, driver.id)
		layer = FakeChannelLayer()
		with patch('realtime.notifications.get_channel_layer', return_value=layer):
			delivered = publish_ride_event('ride_accepted', ride, 'Accepted')

		self.assertEqual(delivered, 2)
		self.assertEqual(layer.groups(), [user_group(self.rider.id), driver_group(driver.id)])
		rider_message = layer.sent[0][1]
		driver_message = layer.sent[1][1]
		self.assertEqual(rider_message['ride_data']['verification_code'], ride.verification_code)
		self.assertNotIn('verification_code', driver_message['ride_data'])
		self.assertEqual(driver_message['driver_id'], driver.id)

	def test_rider_failure_does_not_block_driver(self):
		driver = self.drivers[0]
		ride = accept_ride(self.ride.id, driver.id)
		layer = FakeChannelLayer(failing={user_group(self.rider.id)})
		with patch('realtime.notifications.get_channel_layer', return_value=layer):
			delivered = publish_ride_event('ride_started', ride)

		self.assertEqual(delivered, 1)
		self.assertEqual(layer.groups(), [driver_group(driver.id)])

	def test_cancel_event_addresses_previous_driver(self):
		layer = FakeChannelLayer()
		with patch('realtime.notifications.get_channel_layer', return_value=layer):
			publish_ride_event('ride_cancelled', self.ride, driver_id=self.drivers[2].id, extra={'cancelled_by': 'rider'})

		self.assertIn(driver_group(self.drivers[2].id), layer.groups())
		self.assertEqual(layer.sent[0][1]['cancelled_by'], 'rider')

	def test_rating_goes_to_driver(self):
		driver = self.drivers[0]
		Ride.objects.filter(pk=self.ride.pk).update(
			status=RideStatus.COMPLETED, driver=driver, rating=4, review='Nice'
		)
		self.ride.refresh_from_db()
		layer = FakeChannelLayer()
		with patch('realtime.notifications.get_channel_layer', return_value=layer):
			self.assertTrue(notify_new_rating(self.ride))

		self.assertEqual(layer.groups(), [driver_group(driver.id)])
		self.assertEqual(layer.sent[0][1]['rating'], 4)

	def test_driver_location_forwarded_to_rider_during_ride(self):
		driver = self.drivers[0]
		layer = FakeChannelLayer()
		with patch('realtime.notifications.get_channel_layer', return_value=layer):
			self.assertEqual(publish_driver_location(driver.id, 37.79, -122.40), 0)
			accept_ride(self.ride.id, driver.id)
			self.assertEqual(publish_driver_location(driver.id, 37.79, -122.40), 1)

		group, message = layer.sent[0]
		self.assertEqual(group, user_group(self.rider.id))
		self.assertEqual(message['type'], 'driver_location')
		self.assertEqual(message['location'], {'lat': 37.79, 'lng': -122.40})

	def test_no_channel_layer(self):
		with patch('realtime.notifications.get_channel_layer', return_value=None):
			self.assertEqual(fan_out_new_ride(self.ride, [self.drivers[0].id]), 0)


class ChatNotificationTests(TestCase):
	def setUp(self):
		self.rider = User.objects.create_user(username='rider', password='pass1234', role='rider')
		self.driver = make_driver('driver')
		with patch('realtime.notifications.publish_ride_event'):
			self.ride = accept_ride(make_ride(self.rider).id, self.driver.id)

	def test_message_reaches_both_participants_once(self):
		message = ChatMessage.objects.create(ride=self.ride, sender=self.rider, sender_role='rider', text='Hi')
		layer = FakeChannelLayer()
		with patch('realtime.notifications.get_channel_layer', return_value=layer):
			self.assertEqual(publish_chat_message(message, self.ride), 2)

		self.assertEqual(layer.groups(), [user_group(self.rider.id), driver_group(self.driver.id)])
		payload = layer.sent[0][1]
		self.assertEqual(payload['type'], 'chat_message')
		self.assertEqual(payload['chat']['text'], 'Hi')
		self.assertEqual(payload['chat']['sender_id'], self.rider.id)

	def test_typing_and_read_go_to_the_other_side(self):
		layer = FakeChannelLayer()
		with patch('realtime.notifications.get_channel_layer', return_value=layer):
			notify_chat_typing(self.ride, self.rider.id, True)
			notify_chat_read(self.ride, self.driver.id, [7, 8])

		self.assertEqual(layer.groups(), [driver_group(self.driver.id), user_group(self.rider.id)])
		self.assertEqual(layer.sent[1][1]['message_ids'], [7, 8])

	def test_chat_failure_for_one_side_does_not_block_the_other(self):
		message = ChatMessage.objects.create(ride=self.ride, sender=self.driver, sender_role='driver', text='Here')
		layer = FakeChannelLayer(failing={user_group(self.rider.id)})
		with patch('realtime.notifications.get_channel_layer', return_value=layer):
			self.assertEqual(publish_chat_message(message, self.ride), 1)
		self.assertEqual(layer.groups(), [driver_group(self.driver.id)])


class PresenceStoreTests(TestCase):
	def setUp(self):
		self.redis = Mock()
		self.pipe = self.redis.pipeline.return_value
		self.store = PresenceStore(redis_client=self.redis, ttl_seconds=90)

	def test_register_sets_ttl(self):
		self.store.register(7, 'channel-a')

		key = f'{PRESENCE_KEY_PREFIX}7'
		self.pipe.sadd.assert_called_once_with(key, 'channel-a')
		self.pipe.expire.assert_called_once_with(key, 90)
		self.pipe.execute.assert_called_once()

	def test_refresh_reports_expired_handle(self):
		self.redis.expire.return_value = 0
		self.assertFalse(self.store.refresh(7))
		self.redis.expire.return_value = 1
		self.assertTrue(self.store.refresh(7))

	def test_unregister_returns_remaining_connections(self):
		self.pipe.execute.return_value = [1, 2]
		self.assertEqual(self.store.unregister(7, 'channel-a'), 2)
		self.pipe.srem.assert_called_once_with(f'{PRESENCE_KEY_PREFIX}7', 'channel-a')

	def test_is_present(self):
		self.redis.exists.return_value = 1
		self.assertTrue(self.store.is_present(7))


class ConsumerTestBase(TransactionTestCase):
	def setUp(self):
		self.rider = User.objects.create_user(username='rider', password='pass1234', role='rider')
		self.driver = make_driver('driver')
		self.presence = AsyncMock()
		patcher = patch('realtime.consumers.driver_consumer.get_async_presence_store', return_value=self.presence)
		patcher.start()
		self.addCleanup(patcher.stop)

	def communicator(self, consumer, path, user):
		communicator = WebsocketCommunicator(consumer.as_asgi(), path)
		communicator.scope['user'] = user
		return communicator


class DriverConsumerTests(ConsumerTestBase):
	async def test_anonymous_rejected(self):
		communicator = self.communicator(DriverConsumer, '/ws/driver/', AnonymousUser())
		connected, _ = await communicator.connect()
		self.assertFalse(connected)

	async def test_rider_rejected(self):
		communicator = self.communicator(DriverConsumer, '/ws/driver/', self.rider)
		await communicator.connect()
		message = await communicator.receive_json_from()
		self.assertEqual(message['type'], 'error')
		self.assertEqual(message['code'], 'forbidden')
		await communicator.disconnect()

	async def test_location_heartbeat_and_status(self):
		communicator = self.communicator(DriverConsumer, '/ws/driver/', self.driver)
		connected, _ = await communicator.connect()
		self.assertTrue(connected)
		greeting = await communicator.receive_json_from()
		self.assertEqual(greeting['type'], 'connection_established')
		self.presence.register.assert_awaited_once()

		await communicator.send_json_to({'type': 'driver_location_update', 'latitude': 37.70, 'longitude': -122.45})
		reply = await communicator.receive_json_from()
		self.assertEqual(reply, {'type': 'location_updated', 'accepted': True})

		await communicator.send_json_to({'type': 'heartbeat'})
		self.assertEqual((await communicator.receive_json_from())['type'], 'heartbeat_ack')

		await communicator.send_json_to({'type': 'driver_status_update', 'is_available': 'yes'})
		error = await communicator.receive_json_from()
		self.assertEqual(error['code'], 'invalid_input')

		await communicator.send_json_to({'type': 'driver_status_update', 'is_available': False})
		reply = await communicator.receive_json_from()
		self.assertEqual(reply, {'type': 'status_updated', 'is_available': False})

		await communicator.disconnect()
		self.presence.unregister.assert_awaited_once()

		profile = await DriverProfile.objects.aget(user_id=self.driver.id)
		self.assertAlmostEqual(float(profile.current_latitude), 37.70)
		self.assertFalse(profile.on_duty)

	async def test_invalid_location_and_unknown_type(self):
		communicator = self.communicator(DriverConsumer, '/ws/driver/', self.driver)
		await communicator.connect()
		await communicator.receive_json_from()

		await communicator.send_json_to({'type': 'driver_location_update', 'latitude': 123, 'longitude': 0})
		self.assertEqual((await communicator.receive_json_from())['code'], 'invalid_input')

		await communicator.send_json_to({'type': 'teleport'})
		self.assertEqual((await communicator.receive_json_from())['code'], 'invalid_input')

		await communicator.send_json_to({'type': 'heartbeat', 'timestamp': 'yesterday'})
		self.assertEqual((await communicator.receive_json_from())['code'], 'invalid_input')

		await communicator.disconnect()

	async def test_offer_delivered_to_driver_group(self):
		communicator = self.communicator(DriverConsumer, '/ws/driver/', self.driver)
		await communicator.connect()
		await communicator.receive_json_from()

		await get_channel_layer().group_send(driver_group(self.driver.id), {
			'type': 'new_ride',
			'ride_id': 'ride-1',
			'status': 'requested',
			'ride_data': {'id': 'ride-1'},
			'message': 'New ride request nearby.',
		})

		message = await communicator.receive_json_from()
		self.assertEqual(message['type'], 'new_ride')
		self.assertEqual(message['ride'], {'id': 'ride-1'})
		await communicator.disconnect()


@patch('realtime.notifications.publish_ride_event')
class RideConsumerTests(ConsumerTestBase):
	def setUp(self):
		super().setUp()
		self.ride = make_ride(self.rider)

	async def test_driver_accepts_over_websocket(self, mock_publish):
		communicator = self.communicator(RideConsumer, '/ws/ride/', self.driver)
		await communicator.connect()
		await communicator.receive_json_from()

		await communicator.send_json_to({'type': 'ride_status', 'ride_id': str(self.ride.id), 'status': 'accepted'})
		reply = await communicator.receive_json_from()
		self.assertEqual(reply, {'type': 'ride_status_updated', 'ride_id': str(self.ride.id), 'status': 'accepted'})

		await communicator.send_json_to({
			'type': 'ride_status',
			'ride_id': str(self.ride.id),
			'status': 'in-progress',
			'verification_code': 'nope',
		})
		error = await communicator.receive_json_from()
		self.assertEqual(error['code'], 'invalid_code')

		await communicator.disconnect()
		ride = await Ride.objects.aget(pk=self.ride.pk)
		self.assertEqual(ride.status, RideStatus.ACCEPTED)

	async def test_rider_cannot_send_tracking(self, mock_publish):
		communicator = self.communicator(RideConsumer, '/ws/ride/', self.rider)
		await communicator.connect()
		await communicator.receive_json_from()

		await communicator.send_json_to({'type': 'tracking_update', 'latitude': 37.7, 'longitude': -122.4})
		self.assertEqual((await communicator.receive_json_from())['code'], 'forbidden')

		await communicator.send_json_to({'type': 'ride_status', 'ride_id': str(self.ride.id), 'status': 'flying'})
		self.assertEqual((await communicator.receive_json_from())['code'], 'invalid_input')

		await communicator.disconnect()


class RideChatConsumerTests(ConsumerTestBase):
	def setUp(self):
		super().setUp()
		with patch('realtime.notifications.publish_ride_event'):
			self.ride = accept_ride(make_ride(self.rider).id, self.driver.id)
		self.ride_id = str(self.ride.id)

	async def connected(self, user):
		communicator = self.communicator(RideConsumer, '/ws/ride/', user)
		connected, _ = await communicator.connect()
		self.assertTrue(connected)
		await communicator.receive_json_from()
		return communicator

	async def test_chat_between_rider_and_driver(self):
		rider = await self.connected(self.rider)
		driver = await self.connected(self.driver)

		await driver.send_json_to({'type': 'chat_initiate', 'ride_id': self.ride_id})
		greeting = await driver.receive_json_from()
		self.assertEqual(greeting['type'], 'chat_message')
		self.assertEqual(greeting['chat']['sender_role'], 'driver')
		self.assertEqual((await rider.receive_json_from())['chat']['text'], greeting['chat']['text'])
		self.assertEqual(await rider.receive_json_from(), {
			'type': 'chat_initiated',
			'ride_id': self.ride_id,
			'driver_id': self.driver.id,
		})

		await rider.send_json_to({'type': 'chat_send', 'ride_id': self.ride_id, 'text': 'By the fountain'})
		echo = await rider.receive_json_from()
		received = await driver.receive_json_from()
		self.assertEqual(echo, received)
		self.assertEqual(received['chat']['text'], 'By the fountain')

		await rider.send_json_to({'type': 'chat_typing', 'ride_id': self.ride_id, 'is_typing': False})
		typing = await driver.receive_json_from()
		self.assertEqual((typing['type'], typing['user_id'], typing['is_typing']), ('chat_typing', self.rider.id, False))

		await driver.send_json_to({'type': 'chat_read', 'ride_id': self.ride_id})
		ack = await driver.receive_json_from()
		self.assertEqual(ack['message_ids'], [received['chat']['id']])
		read = await rider.receive_json_from()
		self.assertEqual((read['type'], read['reader_id']), ('chat_read', self.driver.id))

		await rider.send_json_to({'type': 'chat_join', 'ride_id': self.ride_id})
		history = await rider.receive_json_from()
		self.assertEqual(history['type'], 'chat_history')
		self.assertEqual([m['text'] for m in history['messages']], [greeting['chat']['text'], 'By the fountain'])
		self.assertEqual(history['messages'][1]['status'], 'read')

		await rider.disconnect()
		await driver.disconnect()

	async def test_chat_errors(self):
		outsider_user = await database_sync_to_async(make_driver)('outsider')
		outsider = await self.connected(outsider_user)
		rider = await self.connected(self.rider)

		await outsider.send_json_to({'type': 'chat_send', 'ride_id': self.ride_id, 'text': 'Hello'})
		self.assertEqual((await outsider.receive_json_from())['code'], 'forbidden')

		await rider.send_json_to({'type': 'chat_initiate', 'ride_id': self.ride_id})
		self.assertEqual((await rider.receive_json_from())['code'], 'forbidden')

		await rider.send_json_to({'type': 'chat_send', 'text': 'No ride'})
		self.assertEqual((await rider.receive_json_from())['code'], 'invalid_input')

		await rider.send_json_to({'type': 'chat_send', 'ride_id': self.ride_id, 'text': '   '})
		self.assertEqual((await rider.receive_json_from())['code'], 'invalid_input')

		self.assertTrue(await rider.receive_nothing())
		self.assertFalse(await ChatMessage.objects.aexists())
		await outsider.disconnect()
		await rider.disconnect()


class JWTAuthMiddlewareTests(TransactionTestCase):
	def setUp(self):
		self.user = User.objects.create_user(username='rider', password='pass1234', role='rider')
		self.token = str(AccessToken.for_user(self.user))
		self.captured = {}

	async def resolve(self, query_string=b'', headers=()):
		async def inner(scope, receive, send):
			self.captured.update(scope)

		scope = {'type': 'websocket', 'query_string': query_string, 'headers': list(headers)}
		await JWTAuthMiddleware(inner)(scope, None, None)
		return self.captured['user']

	async def test_token_in_query_string(self):
		user = await self.resolve(query_string=f'token={self.token}'.encode())
		self.assertEqual(user.pk, self.user.pk)

	async def test_bearer_header(self):
		user = await self.resolve(headers=[(b'authorization', f'Bearer {self.token}'.encode())])
		self.assertEqual(user.pk, self.user.pk)

	async def test_bad_token_is_anonymous(self):
		user = await self.resolve(query_string=b'token=garbage')
		self.assertTrue(user.is_anonymous)

	async def test_no_token_is_anonymous(self):
		user = await self.resolve()
		self.assertTrue(user.is_anonymous)
