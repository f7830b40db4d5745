from unittest.mock import Mock, patch

from django.test import TestCase
from django.urls import reverse

from . import views


def _failing(message):
	return Mock(side_effect=RuntimeError(message))


class HealthCheckTests(TestCase):
	def setUp(self):
		self.url = reverse("health-check")

	def test_all_healthy(self):
		with patch.dict(views.CHECKS, {"redis": (Mock(), False)}):
			resp = self.client.get(self.url)
		self.assertEqual(resp.status_code, 200)
		self.assertEqual(resp.json()["status"], "healthy")
		self.assertEqual(set(resp.json()["services"]), {"database", "cache", "channels", "redis"})

	def test_redis_down_is_degraded(self):
		with patch.dict(views.CHECKS, {"redis": (_failing("connection refused"), False)}):
			resp = self.client.get(self.url)
		self.assertEqual(resp.status_code, 200)
		self.assertEqual(resp.json()["status"], "degraded")
		self.assertIn("connection refused", resp.json()["services"]["redis"])

	def test_critical_failure_is_unavailable(self):
		with patch.dict(views.CHECKS, {"redis": (Mock(), False), "database": (_failing("db gone"), True)}):
			resp = self.client.get(self.url)
		self.assertEqual(resp.status_code, 503)
		self.assertEqual(resp.json()["status"], "unhealthy")
