"""
URL configuration for settlement API.

URL Structure:
    /orders/{id}/                     GET
    /orders/{id}/payment-status/      GET
    /orders/{id}/{action}/            POST  (accept, capture-escrow, deliver,
                                             review, release, cancel, dispute)
    /pricing/preview/                 POST

All URLs are prefixed with /api/v1/settlement/ in the main URL configuration.
"""

from django.urls import include, path
from rest_framework.routers import DefaultRouter

from settlement.views import OrderViewSet, PricingPreviewView

router = DefaultRouter()
router.register(r"orders", OrderViewSet, basename="order")

app_name = "settlement"

urlpatterns = [
    path("", include(router.urls)),
    path("pricing/preview/", PricingPreviewView.as_view(), name="pricing-preview"),
]
