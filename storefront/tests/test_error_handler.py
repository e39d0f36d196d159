from unittest.mock import patch

from django.test import TestCase


class ErrorHandlerTests(TestCase):
    def test_unknown_api_url_returns_json_404(self):
        response = self.client.get('/api/this-url-does-not-exist/')
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {"success": False, "message": "Not found"})

    def test_unhandled_exception_rendered_as_json_envelope(self):
        with patch("orders.views.Order.objects.get", side_effect=RuntimeError("db gone")):
            response = self.client.get('/api/orders/7d8f35a6-0f1b-4c59-9a55-1c0d3a1d2b3e/')
        self.assertEqual(response.status_code, 500)
        body = response.json()
        self.assertFalse(body["success"])
        self.assertEqual(body["error"], "db gone")
