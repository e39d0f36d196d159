import logging

from django.apps import AppConfig
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

logger = logging.getLogger(__name__)


class PaymentsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "payments"

    def ready(self):
        from .exceptions import GatewayConfigError
        from .gateway import get_client

        try:
            get_client()
        except GatewayConfigError as e:
            if getattr(settings, "RAZORPAY_REQUIRED", True):
                raise ImproperlyConfigured(str(e)) from e
            logger.error("Payments disabled: %s", e)
