from django.urls import path

from .views import (
    CartItemsView,
    CartMergeView,
    CartView,
    CheckoutCancelView,
    CheckoutCollectionView,
    CheckoutPaymentView,
    OrderDetailView,
    OrderPollView,
    OrdersCollectionView,
    PaymentNotificationView,
)

app_name = "checkout"

urlpatterns = [
    path("cart/", CartView.as_view(), name="cart"),
    path("cart/items/", CartItemsView.as_view(), name="cart-items"),
    path("cart/merge/", CartMergeView.as_view(), name="cart-merge"),
    path("checkout/", CheckoutCollectionView.as_view(), name="checkout-start"),
    path("checkout/<uuid:oid>/payment/", CheckoutPaymentView.as_view(), name="checkout-payment"),
    path("checkout/<uuid:oid>/cancel/", CheckoutCancelView.as_view(), name="checkout-cancel"),
    path("orders/", OrdersCollectionView.as_view(), name="orders-collection"),
    path("orders/<uuid:oid>/", OrderDetailView.as_view(), name="orders-detail"),
    path("orders/<uuid:oid>/poll/", OrderPollView.as_view(), name="orders-poll"),
    path("payments/notifications/", PaymentNotificationView.as_view(), name="payments-notifications"),
]
