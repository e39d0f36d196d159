from django.urls import path
from . import views
app_name = "orders"
urlpatterns = [
    path("", views.create_order_view, name="create"),
    path("<str:order_id>/", views.order_detail_view, name="detail"),
]
