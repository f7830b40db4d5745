from datetime import datetime

from django.test import SimpleTestCase

from common.choices import VehicleClass
from services.ride_management.exceptions import InvalidInputError
from .fare_calculator import FARE_TABLE, FareCalculator, FareQuote, surge_multiplier_for_hour


def at(hour, minute=0):
	return datetime(2026, 3, 2, hour, minute)


class SurgeScheduleTests(SimpleTestCase):
	def test_peak_hours(self):
		for hour in (7, 8, 9, 17, 18, 19):
			self.assertEqual(surge_multiplier_for_hour(hour), 1.5, hour)

	def test_late_night_hours(self):
		for hour in (22, 23, 0, 1, 3, 5):
			self.assertEqual(surge_multiplier_for_hour(hour), 1.3, hour)

	def test_off_peak_hours(self):
		for hour in (6, 10, 12, 16, 20, 21):
			self.assertEqual(surge_multiplier_for_hour(hour), 1.0, hour)


class FareCalculatorTests(SimpleTestCase):
	def setUp(self):
		self.calculator = FareCalculator()

	def test_economy_peak_fare(self):
		# (20 + 5 * 8 + 10 * 1.5) * 1.5 = 112.5 -> 113 -> 110
		quote = self.calculator.quote(5000, 600, at(8))
		self.assertEqual(quote.amount_for(VehicleClass.ECONOMY), 110)
		self.assertEqual(quote.surge_multiplier, 1.5)

	def test_all_classes_quoted(self):
		quote = self.calculator.quote(5000, 600, at(8))
		self.assertEqual(quote.amounts, {
			VehicleClass.ECONOMY: 110,
			VehicleClass.STANDARD: 150,
			VehicleClass.PREMIUM: 230,
		})

	def test_short_trip_uses_minimums_and_floor(self):
		quote = self.calculator.quote(0, 0, at(12))
		# Minimum 1 km / 5 min, then clamped up to twice the base fare
		self.assertEqual(quote.amount_for(VehicleClass.ECONOMY), 40)
		self.assertEqual(quote.amount_for(VehicleClass.STANDARD), 60)
		self.assertEqual(quote.amount_for(VehicleClass.PREMIUM), 100)

	def test_long_trip_capped_at_ten_times_base(self):
		quote = self.calculator.quote(1_000_000, 36_000, at(8))
		for vehicle_class, rate in FARE_TABLE.items():
			self.assertEqual(quote.amount_for(vehicle_class), rate.base * 10)

	def test_fares_are_bounded_multiples_of_ten(self):
		for distance in (0, 750, 3200, 12_345, 48_000, 250_000):
			for duration in (0, 90, 1500, 4000):
				for hour in (3, 8, 12, 18, 23):
					quote = self.calculator.quote(distance, duration, at(hour))
					for vehicle_class, rate in FARE_TABLE.items():
						amount = quote.amount_for(vehicle_class)
						self.assertEqual(amount % 10, 0)
						self.assertGreaterEqual(amount, rate.base * 2)
						self.assertLessEqual(amount, rate.base * 10)

	def test_same_inputs_same_quote(self):
		first = self.calculator.quote(7300, 1100, at(18, 30))
		second = self.calculator.quote(7300, 1100, at(18, 30))
		self.assertEqual(first, second)

	def test_surge_changes_fare(self):
		off_peak = self.calculator.quote(10_000, 1200, at(12)).amount_for(VehicleClass.STANDARD)
		late = self.calculator.quote(10_000, 1200, at(23)).amount_for(VehicleClass.STANDARD)
		peak = self.calculator.quote(10_000, 1200, at(8)).amount_for(VehicleClass.STANDARD)
		self.assertLess(off_peak, late)
		self.assertLess(late, peak)

	def test_negative_inputs_rejected(self):
		with self.assertRaises(InvalidInputError):
			self.calculator.quote(-1, 600, at(8))
		with self.assertRaises(InvalidInputError):
			self.calculator.quote(1000, -5, at(8))

	def test_quote_dict_round_trip_keeps_currency_and_source(self):
		quote = FareCalculator(currency="EUR").quote(5000, 600, at(8), route_source="fallback")
		restored = FareQuote.from_dict(quote.as_dict())
		self.assertEqual(restored, quote)
		self.assertEqual(restored.currency, "EUR")
		self.assertEqual(restored.route_source, "fallback")
