from django.urls import path

from .views import (
    CheckoutView,
    ConfirmCheckoutView,
    MerchantOnboardView,
    MerchantSyncView,
    OrdersCollectionView,
    OrdersPingView,
    OrderStatusView,
    PaymentWebhookView,
    RetrieveOrderView,
    ShopOrdersView,
)

app_name = "orders"

urlpatterns = [
    path("orders/ping/", OrdersPingView.as_view(), name="ping"),
    path("checkout/", CheckoutView.as_view(), name="checkout"),
    path("checkout/<uuid:oid>/confirm/", ConfirmCheckoutView.as_view(), name="checkout-confirm"),
    path("payments/webhook/", PaymentWebhookView.as_view(), name="payments-webhook"),
    path("orders/", OrdersCollectionView.as_view(), name="orders-collection"),  # customer history
    path("orders/<uuid:oid>/", RetrieveOrderView.as_view(), name="orders-detail"),
    path("orders/<uuid:oid>/status/", OrderStatusView.as_view(), name="orders-status"),
    path("shops/<uuid:sid>/orders/", ShopOrdersView.as_view(), name="shop-orders"),
    path("shops/<uuid:sid>/merchant/onboard/", MerchantOnboardView.as_view(), name="merchant-onboard"),
    path("shops/<uuid:sid>/merchant/sync/", MerchantSyncView.as_view(), name="merchant-sync"),
]
