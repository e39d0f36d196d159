from django.urls import path
from . import views
app_name = "payments_admin"
urlpatterns = [
    path("verify-payments", views.verify_payments_view, name="verify_payments"),
    path("verify-payments/<str:order_id>", views.verify_order_view, name="verify_order"),
]
