from unittest.mock import Mock

import requests
from asgiref.sync import async_to_sync
from django.conf import settings
from django.core.cache import cache
from django.test import SimpleTestCase

from common.utils.geo import Coordinates, calculate_distance
from services.ride_management.exceptions import (
	AddressNotFoundError,
	InvalidInputError,
	ServiceUnavailableError,
)
from .retry import RetriesExhausted, RetryPolicy
from .route_client import GeoRouteClient, RouteEstimate, to_coordinates

ORIGIN = Coordinates(37.7749, -122.4194)
DESTINATION = Coordinates(37.8044, -122.2712)


def response(payload=None, status_code=200):
	resp = Mock()
	resp.status_code = status_code
	resp.json.return_value = payload
	if status_code >= 400:
		resp.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error")
	return resp


def osrm(distance, duration):
	return {"code": "Ok", "routes": [{"distance": distance, "duration": duration}]}


class RetryPolicyTests(SimpleTestCase):
	def setUp(self):
		self.sleeps = []
		self.policy = RetryPolicy(
			max_attempts=3,
			backoff_seconds=1.0,
			retry_on=(ConnectionError,),
			sleep=self.sleeps.append,
		)

	def test_returns_first_success(self):
		fn = Mock(side_effect=[ConnectionError("down"), ConnectionError("down"), "ok"])
		self.assertEqual(self.policy.call(fn), "ok")
		self.assertEqual(fn.call_count, 3)
		self.assertEqual(self.sleeps, [1.0, 2.0])

	def test_gives_up_after_max_attempts(self):
		fn = Mock(side_effect=ConnectionError("down"))
		with self.assertRaises(RetriesExhausted) as ctx:
			self.policy.call(fn)
		self.assertEqual(ctx.exception.attempts, 3)
		self.assertIsInstance(ctx.exception.last_error, ConnectionError)
		self.assertEqual(fn.call_count, 3)
		# No sleep after the last attempt
		self.assertEqual(self.sleeps, [1.0, 2.0])

	def test_non_retryable_error_propagates(self):
		fn = Mock(side_effect=KeyError("boom"))
		with self.assertRaises(KeyError):
			self.policy.call(fn)
		self.assertEqual(fn.call_count, 1)

	def test_async_call_shares_schedule(self):
		policy = RetryPolicy(max_attempts=2, backoff_seconds=0, retry_on=(ConnectionError,))
		calls = []

		async def flaky():
			calls.append(1)
			if len(calls) == 1:
				raise ConnectionError("down")
			return "ok"

		self.assertEqual(async_to_sync(policy.acall)(flaky), "ok")
		self.assertEqual(len(calls), 2)

	def test_async_call_gives_up(self):
		policy = RetryPolicy(max_attempts=2, backoff_seconds=0, retry_on=(ConnectionError,))

		async def down():
			raise ConnectionError("down")

		with self.assertRaises(RetriesExhausted):
			async_to_sync(policy.acall)(down)


class RouteClientTestBase(SimpleTestCase):
	def setUp(self):
		cache.clear()
		self.session = Mock()
		self.session.headers = {}
		self.client = GeoRouteClient(
			config=settings.DISPATCH_CONFIG,
			session=self.session,
			retry_policy=RetryPolicy(
				max_attempts=3,
				backoff_seconds=0,
				retry_on=GeoRouteClient.RETRYABLE,
				sleep=lambda seconds: None,
			),
		)

	def tearDown(self):
		cache.clear()


class RouteTests(RouteClientTestBase):
	def test_provider_route(self):
		self.session.get.return_value = response(osrm(15234.5, 1260.0))

		estimate = self.client.route(ORIGIN, DESTINATION)

		self.assertEqual(estimate, RouteEstimate(15234.5, 1260.0, "provider"))
		self.assertFalse(estimate.is_fallback)
		url = self.session.get.call_args[0][0]
		self.assertTrue(url.endswith("/route/v1/driving/-122.4194,37.7749;-122.2712,37.8044"))

	def test_accepts_mappings(self):
		self.session.get.return_value = response(osrm(1000, 120))
		estimate = self.client.route({"lat": 37.7749, "lng": -122.4194}, {"lat": 37.8044, "lng": -122.2712})
		self.assertEqual(estimate.distance_meters, 1000)

	def test_unreachable_provider_falls_back_to_great_circle(self):
		self.session.get.side_effect = requests.ConnectionError("down")

		estimate = self.client.route(ORIGIN, DESTINATION)

		expected = calculate_distance(ORIGIN.lat, ORIGIN.lng, DESTINATION.lat, DESTINATION.lng)
		self.assertTrue(estimate.is_fallback)
		self.assertAlmostEqual(estimate.distance_meters, expected)
		self.assertAlmostEqual(estimate.duration_seconds, expected / 1000 / 30 * 3600)
		self.assertEqual(self.session.get.call_count, 3)

	def test_server_error_is_retried(self):
		self.session.get.side_effect = [response(status_code=503), response(osrm(2000, 240))]

		estimate = self.client.route(ORIGIN, DESTINATION)

		self.assertEqual(estimate.source, "provider")
		self.assertEqual(self.session.get.call_count, 2)

	def test_malformed_response_falls_back_without_retry(self):
		self.session.get.return_value = response({"code": "NoRoute", "routes": []})

		estimate = self.client.route(ORIGIN, DESTINATION)

		self.assertTrue(estimate.is_fallback)
		self.assertEqual(self.session.get.call_count, 1)

	def test_missing_distance_falls_back(self):
		self.session.get.return_value = response({"code": "Ok", "routes": [{"duration": 10}]})
		self.assertTrue(self.client.route(ORIGIN, DESTINATION).is_fallback)

	def test_client_error_falls_back(self):
		self.session.get.return_value = response(status_code=400)
		self.assertTrue(self.client.route(ORIGIN, DESTINATION).is_fallback)
		self.assertEqual(self.session.get.call_count, 1)

	def test_routes_are_cached(self):
		self.session.get.return_value = response(osrm(1000, 120))

		first = self.client.route(ORIGIN, DESTINATION)
		second = self.client.route(ORIGIN, DESTINATION)

		self.assertEqual(first, second)
		self.assertEqual(self.session.get.call_count, 1)

	def test_invalid_coordinates_rejected(self):
		with self.assertRaises(InvalidInputError):
			self.client.route({"lat": 91, "lng": 0}, DESTINATION)
		with self.assertRaises(InvalidInputError):
			self.client.route(ORIGIN, {"lat": "abc", "lng": 0})
		self.session.get.assert_not_called()


class ToCoordinatesTests(SimpleTestCase):
	def test_rejects_non_finite_and_booleans(self):
		for bad in ({"lat": float("nan"), "lng": 0}, {"lat": True, "lng": 0}, {"lat": 0}, "0,0", None):
			with self.assertRaises(InvalidInputError):
				to_coordinates(bad)

	def test_converts_ints(self):
		self.assertEqual(to_coordinates({"lat": 10, "lng": -20}), Coordinates(10.0, -20.0))


class GeocodeTests(RouteClientTestBase):
	def test_geocode_returns_first_match(self):
		self.session.get.return_value = response([
			{"lat": "37.7955", "lon": "-122.3937", "display_name": "Ferry Building, San Francisco"},
		])

		result = self.client.geocode("ferry building")

		self.assertEqual(result, {
			"lat": 37.7955,
			"lng": -122.3937,
			"address": "Ferry Building, San Francisco",
		})
		params = self.session.get.call_args[1]["params"]
		self.assertEqual(params["q"], "ferry building")
		self.assertEqual(params["limit"], 1)

	def test_no_match(self):
		self.session.get.return_value = response([])
		with self.assertRaises(AddressNotFoundError):
			self.client.geocode("nowhere at all")

	def test_provider_down(self):
		self.session.get.side_effect = requests.Timeout("slow")
		with self.assertRaises(ServiceUnavailableError):
			self.client.geocode("ferry building")
		self.assertEqual(self.session.get.call_count, 3)

	def test_blank_address(self):
		with self.assertRaises(InvalidInputError):
			self.client.geocode("   ")


class AutocompleteTests(RouteClientTestBase):
	def test_short_input_returns_nothing(self):
		self.assertEqual(self.client.autocomplete("ab"), [])
		self.session.get.assert_not_called()

	def test_sorted_by_importance_and_bad_items_skipped(self):
		self.session.get.return_value = response([
			{"lat": "1.0", "lon": "2.0", "display_name": "Low", "importance": 0.2, "type": "road"},
			{"lat": "bad", "lon": "2.0", "display_name": "Broken", "importance": 0.9},
			{
				"lat": "3.0", "lon": "4.0", "display_name": "High", "importance": 0.7, "type": "city",
				"address": {"town": "Springfield", "country": "US"},
			},
		])

		suggestions = self.client.autocomplete("spring", limit=3, country="us")

		self.assertEqual([s["display_name"] for s in suggestions], ["High", "Low"])
		self.assertEqual(suggestions[0]["lat"], 3.0)
		self.assertEqual(suggestions[0]["address_details"]["city"], "Springfield")
		params = self.session.get.call_args[1]["params"]
		self.assertEqual(params["countrycodes"], "us")
		self.assertEqual(params["limit"], 3)

	def test_provider_failure_returns_empty_list(self):
		self.session.get.side_effect = requests.ConnectionError("down")
		self.assertEqual(self.client.autocomplete("market street"), [])

	def test_non_list_payload_returns_empty_list(self):
		self.session.get.return_value = response({"error": "nope"})
		self.assertEqual(self.client.autocomplete("market street"), [])

	def test_non_numeric_importance_skips_item(self):
		self.session.get.return_value = response([
			{"lat": "1.0", "lon": "2.0", "display_name": "Vague", "importance": "high"},
			{"lat": "3.0", "lon": "4.0", "display_name": "Market St", "importance": 0.5},
		])

		suggestions = self.client.autocomplete("market street")

		self.assertEqual([s["display_name"] for s in suggestions], ["Market St"])

	def test_string_address_details_are_ignored(self):
		self.session.get.return_value = response([
			{"lat": "1.0", "lon": "2.0", "display_name": "Main St", "address": "Main St"},
		])

		suggestions = self.client.autocomplete("main street")

		self.assertEqual(len(suggestions), 1)
		self.assertEqual(suggestions[0]["importance"], 0.0)
		self.assertIsNone(suggestions[0]["address_details"]["road"])

	def test_out_of_range_coordinates_skip_item(self):
		self.session.get.return_value = response([
			{"lat": "123.0", "lon": "2.0", "display_name": "Nowhere"},
		])
		self.assertEqual(self.client.autocomplete("nowhere"), [])
