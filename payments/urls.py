from django.urls import path
from . import views
app_name = "payments"
urlpatterns = [
    path("create-order", views.create_order_view, name="create_order"),
    path("verify", views.verify_view, name="verify"),
    path("failure", views.failure_view, name="failure"),
    path("webhook", views.webhook_view, name="webhook"),
    path("details/<str:payment_id>", views.payment_details_view, name="details"),
]
