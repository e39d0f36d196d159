from django.contrib import admin
from django.http import JsonResponse
from django.urls import include, path


def api_not_found(request, exception=None):
    return JsonResponse({"success": False, "message": "Not found"}, status=404)


urlpatterns = [
    path("admin/", admin.site.urls),
    path("api/orders/", include("orders.urls")),
    path("api/payments/", include("payments.urls")),
    path("api/admin/", include("payments.admin_urls")),
]

handler404 = "storefront.urls.api_not_found"
