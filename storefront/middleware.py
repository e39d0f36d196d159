import logging

from django.http import JsonResponse

logger = logging.getLogger(__name__)


class JsonErrorMiddleware:
    """Render uncaught exceptions under the API prefix as the JSON error envelope."""

    api_prefix = "/api/"

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        return self.get_response(request)

    def process_exception(self, request, exception):
        if not request.path.startswith(self.api_prefix):
            return None
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return JsonResponse(
            {"success": False, "message": "Server error", "error": str(exception)},
            status=500,
        )
