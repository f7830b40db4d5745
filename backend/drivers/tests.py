from datetime import timedelta
from io import StringIO
from unittest.mock import patch

from django.core.management import call_command
from django.test import TestCase
from django.urls import reverse
from django.utils import timezone
from rest_framework.test import APIClient

from accounts.models import User
from common.choices import RideStatus, VehicleClass
from common.utils.geo import Coordinates
from rides.models import Ride
from services.ride_management.exceptions import (
	DriverNotFoundError,
	DriverUnavailableError,
	InvalidInputError,
	InvalidStateError,
)
from . import registry
from .models import DriverProfile
from .tasks import expire_stale_drivers_task, reconcile_driver_availability_task

# Union Square, San Francisco
ORIGIN = Coordinates(37.7880, -122.4075)
FRESHNESS = timedelta(seconds=300)


def make_driver(username, vehicle_class=VehicleClass.ECONOMY, available=True, lat=37.7890, lng=-122.4080,
				last_seen=None):
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
		current_latitude=lat,
		current_longitude=lng,
		last_seen=last_seen or timezone.now(),
	)
	return user


def make_ride(rider, driver=None, status=RideStatus.REQUESTED):
	return Ride.objects.create(
		rider=rider,
		driver=driver,
		pickup_address='Union Square',
		pickup_latitude=ORIGIN.lat,
		pickup_longitude=ORIGIN.lng,
		destination_address='Ferry Building',
		destination_latitude=37.7955,
		destination_longitude=-122.3937,
		vehicle_class=VehicleClass.ECONOMY,
		status=status,
		fare_amount=60,
		distance_meters=2500,
		duration_seconds=600,
		verification_code='123456',
	)


def profile(user):
	return DriverProfile.objects.get(user=user)


class FindEligibleTests(TestCase):
	def setUp(self):
		self.near = make_driver('near')
		self.premium = make_driver('premium', vehicle_class=VehicleClass.PREMIUM)
		self.offline = make_driver('offline', available=False)
		self.stale = make_driver('stale', last_seen=timezone.now() - timedelta(minutes=10))
		# Roughly 12 km north
		self.far = make_driver('far', lat=37.8960, lng=-122.4075)

	def test_only_fresh_available_nearby_drivers_of_class(self):
		eligible = registry.find_eligible(VehicleClass.ECONOMY, ORIGIN, radius_km=5, freshness=FRESHNESS)
		self.assertEqual(eligible, [self.near.id])

	def test_wider_radius_includes_far_driver(self):
		eligible = registry.find_eligible(VehicleClass.ECONOMY, ORIGIN, radius_km=20, freshness=FRESHNESS)
		self.assertEqual(set(eligible), {self.near.id, self.far.id})

	def test_class_filter(self):
		eligible = registry.find_eligible(VehicleClass.PREMIUM, ORIGIN, radius_km=5, freshness=FRESHNESS)
		self.assertEqual(eligible, [self.premium.id])

	def test_freshness_window_is_configurable(self):
		eligible = registry.find_eligible(
			VehicleClass.ECONOMY, ORIGIN, radius_km=5, freshness=timedelta(minutes=15)
		)
		self.assertEqual(set(eligible), {self.near.id, self.stale.id})

	def test_driver_without_position_is_skipped(self):
		DriverProfile.objects.filter(user=self.near).update(current_latitude=None, current_longitude=None)
		self.assertEqual(registry.find_eligible(VehicleClass.ECONOMY, ORIGIN, radius_km=5), [])

	def test_invalid_arguments(self):
		with self.assertRaises(InvalidInputError):
			registry.find_eligible('spaceship', ORIGIN)
		with self.assertRaises(InvalidInputError):
			registry.find_eligible(VehicleClass.ECONOMY, Coordinates(120, 0))


class LocationAndHeartbeatTests(TestCase):
	def setUp(self):
		self.driver = make_driver('driver', last_seen=timezone.now() - timedelta(minutes=1))

	def test_newer_update_wins(self):
		accepted = registry.update_location(self.driver.id, Coordinates(37.70, -122.40))
		self.assertTrue(accepted)
		p = profile(self.driver)
		self.assertAlmostEqual(float(p.current_latitude), 37.70)
		self.assertAlmostEqual(float(p.current_longitude), -122.40)

	def test_out_of_order_update_discarded(self):
		now = timezone.now()
		self.assertTrue(registry.update_location(self.driver.id, Coordinates(37.70, -122.40), now))
		self.assertFalse(
			registry.update_location(self.driver.id, Coordinates(37.10, -122.10), now - timedelta(seconds=5))
		)
		p = profile(self.driver)
		self.assertAlmostEqual(float(p.current_latitude), 37.70)
		self.assertEqual(p.last_seen, now)

	def test_future_timestamp_clamped_to_now(self):
		registry.update_location(self.driver.id, Coordinates(37.70, -122.40), timezone.now() + timedelta(hours=1))
		self.assertLessEqual(profile(self.driver).last_seen, timezone.now())

	def test_unknown_driver(self):
		with self.assertRaises(DriverNotFoundError):
			registry.update_location(999999, Coordinates(37.70, -122.40))
		with self.assertRaises(DriverNotFoundError):
			registry.heartbeat(999999)

	def test_invalid_position(self):
		with self.assertRaises(InvalidInputError):
			registry.update_location(self.driver.id, Coordinates(0, 200))

	def test_heartbeat_refreshes_last_seen_only(self):
		before = profile(self.driver)
		self.assertTrue(registry.heartbeat(self.driver.id))
		after = profile(self.driver)
		self.assertGreater(after.last_seen, before.last_seen)
		self.assertEqual(after.current_latitude, before.current_latitude)

	def test_stale_heartbeat_ignored(self):
		self.assertFalse(registry.heartbeat(self.driver.id, timezone.now() - timedelta(hours=1)))


class AvailabilityTests(TestCase):
	def setUp(self):
		self.rider = User.objects.create_user(username='rider', password='pass1234', role='rider')
		self.driver = make_driver('driver', available=False)

	def test_go_on_and_off_duty(self):
		p = registry.set_available(self.driver.id, True)
		self.assertTrue(p.on_duty)
		self.assertTrue(p.is_available)

		p = registry.set_available(self.driver.id, False)
		self.assertFalse(p.on_duty)
		self.assertFalse(p.is_available)

	def test_cannot_go_available_during_ride(self):
		make_ride(self.rider, self.driver, RideStatus.IN_PROGRESS)
		with self.assertRaises(InvalidStateError):
			registry.set_available(self.driver.id, True)
		self.assertFalse(profile(self.driver).is_available)

	def test_can_go_offline_during_ride(self):
		make_ride(self.rider, self.driver, RideStatus.ACCEPTED)
		p = registry.set_available(self.driver.id, False)
		self.assertFalse(p.on_duty)

	def test_claim_and_release(self):
		registry.set_available(self.driver.id, True)

		registry.claim(self.driver.id)
		self.assertFalse(profile(self.driver).is_available)

		with self.assertRaises(DriverUnavailableError):
			registry.claim(self.driver.id)

		registry.release(self.driver.id)
		self.assertTrue(profile(self.driver).is_available)

	def test_release_keeps_off_duty_driver_unavailable(self):
		registry.release(self.driver.id)
		self.assertFalse(profile(self.driver).is_available)

	def test_claim_unknown_driver(self):
		with self.assertRaises(DriverNotFoundError):
			registry.claim(999999)


class SupervisionTests(TestCase):
	def setUp(self):
		self.rider = User.objects.create_user(username='rider', password='pass1234', role='rider')
		self.fresh = make_driver('fresh')
		self.stale = make_driver('stale', last_seen=timezone.now() - timedelta(minutes=10))
		self.off_duty = make_driver('off', available=False, last_seen=timezone.now() - timedelta(minutes=10))

	def test_expire_stale(self):
		expired = registry.expire_stale(freshness=FRESHNESS)

		self.assertEqual(expired, 1)
		stale = profile(self.stale)
		self.assertFalse(stale.on_duty)
		self.assertFalse(stale.is_available)
		self.assertTrue(profile(self.fresh).is_available)

	def test_expire_stale_is_idempotent(self):
		registry.expire_stale(freshness=FRESHNESS)
		self.assertEqual(registry.expire_stale(freshness=FRESHNESS), 0)

	def test_reconcile_locks_busy_and_releases_idle(self):
		busy = make_driver('busy')
		make_ride(self.rider, busy, RideStatus.ACCEPTED)
		idle = make_driver('idle')
		DriverProfile.objects.filter(user=idle).update(is_available=False)

		result = registry.reconcile(freshness=FRESHNESS)

		self.assertEqual(result, {"locked": 1, "released": 1})
		self.assertFalse(profile(busy).is_available)
		self.assertTrue(profile(idle).is_available)
		self.assertFalse(profile(self.off_duty).is_available)
		self.assertEqual(registry.reconcile(freshness=FRESHNESS), {"locked": 0, "released": 0})

	def test_reconcile_leaves_finished_ride_driver_released(self):
		driver = make_driver('done')
		make_ride(self.rider, driver, RideStatus.COMPLETED)
		DriverProfile.objects.filter(user=driver).update(is_available=False)

		registry.reconcile(freshness=FRESHNESS)

		self.assertTrue(profile(driver).is_available)

	def test_reconcile_rechecks_rides_after_locking_release_candidates(self):
		driver = make_driver('accepting')
		DriverProfile.objects.filter(user=driver).update(is_available=False)
		lock_profiles = registry._lock_profiles

		def accept_lands_while_waiting(**filters):
			ids = lock_profiles(**filters)
			if filters.get('on_duty'):
				make_ride(self.rider, driver, RideStatus.ACCEPTED)
			return ids

		with patch.object(registry, '_lock_profiles', side_effect=accept_lands_while_waiting):
			result = registry.reconcile(freshness=FRESHNESS)

		self.assertEqual(result['released'], 0)
		self.assertFalse(profile(driver).is_available)

	def test_reconcile_rechecks_rides_after_locking_busy_drivers(self):
		driver = make_driver('finishing')
		ride = make_ride(self.rider, driver, RideStatus.IN_PROGRESS)
		lock_profiles = registry._lock_profiles

		def completion_lands_while_waiting(**filters):
			ids = lock_profiles(**filters)
			if 'user_id__in' in filters:
				Ride.objects.filter(pk=ride.pk).update(status=RideStatus.COMPLETED)
			return ids

		with patch.object(registry, '_lock_profiles', side_effect=completion_lands_while_waiting):
			result = registry.reconcile(freshness=FRESHNESS)

		self.assertEqual(result['locked'], 0)
		self.assertTrue(profile(driver).is_available)

	def test_tasks(self):
		self.assertEqual(expire_stale_drivers_task(), {"expired": 1})
		self.assertEqual(reconcile_driver_availability_task(), {"locked": 0, "released": 0})

	def test_expire_command(self):
		out = StringIO()
		call_command('expire_stale_drivers', seconds=60, stdout=out)
		self.assertIn('Expired 1 stale driver(s).', out.getvalue())
		self.assertFalse(profile(self.stale).on_duty)

	def test_reconcile_command(self):
		out = StringIO()
		call_command('reconcile_drivers', stdout=out)
		self.assertIn('released 0 idle driver(s)', out.getvalue())


class DriverApiTests(TestCase):
	def setUp(self):
		self.client = APIClient()
		self.driver = make_driver('driver', available=False)
		self.rider = User.objects.create_user(username='rider', password='pass1234', role='rider')
		self.client.force_authenticate(user=self.driver)

	def test_profile(self):
		response = self.client.get(reverse('driver-profile'))
		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.data['vehicle_number'], 'CA-driver')
		self.assertFalse(response.data['is_available'])

	def test_update_vehicle_number(self):
		response = self.client.patch(reverse('driver-profile'), {'vehicle_number': 'CA-NEW1'}, format='json')
		self.assertEqual(response.status_code, 200)
		self.assertEqual(profile(self.driver).vehicle_number, 'CA-NEW1')

	def test_go_available(self):
		response = self.client.post(reverse('driver-availability'), {'is_available': True}, format='json')
		self.assertEqual(response.status_code, 200)
		self.assertTrue(response.data['is_available'])
		self.assertTrue(profile(self.driver).on_duty)

	def test_go_available_during_ride_conflicts(self):
		make_ride(self.rider, self.driver, RideStatus.ACCEPTED)
		response = self.client.post(reverse('driver-availability'), {'is_available': True}, format='json')
		self.assertEqual(response.status_code, 409)
		self.assertEqual(response.data['code'], 'invalid_state')

	@patch('drivers.views.publish_driver_location')
	def test_location_update_forwards_position(self, mock_publish):
		response = self.client.post(
			reverse('driver-location'),
			{'latitude': 37.79, 'longitude': -122.40},
			format='json',
		)
		self.assertEqual(response.status_code, 200)
		self.assertTrue(response.data['accepted'])
		mock_publish.assert_called_once_with(self.driver.id, 37.79, -122.40)

	def test_location_out_of_range(self):
		response = self.client.post(
			reverse('driver-location'),
			{'latitude': 95, 'longitude': 0},
			format='json',
		)
		self.assertEqual(response.status_code, 400)

	def test_riders_are_forbidden(self):
		self.client.force_authenticate(user=self.rider)
		response = self.client.get(reverse('driver-profile'))
		self.assertEqual(response.status_code, 403)
		self.assertEqual(response.data['code'], 'forbidden')
