from django.contrib import admin

from .models import Order, OrderItem, Product, ProductSize


class ProductSizeInline(admin.TabularInline):
    model = ProductSize
    extra = 0


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ("name", "slug", "price", "total_stock", "is_active")
    search_fields = ("name", "slug")
    inlines = [ProductSizeInline]


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    readonly_fields = ("product", "name", "price", "quantity", "size")


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("order_number", "status", "payment_status", "total", "customer_email", "created_at", "updated_at")
    search_fields = ("order_number", "razorpay_order_id", "payment_id", "customer_email")
    list_filter = ("status", "payment_status", "created_at")
    readonly_fields = ("razorpay_order_id", "payment_id", "created_at", "updated_at")
    inlines = [OrderItemInline]
