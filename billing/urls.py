# billing/urls.py
from __future__ import annotations

from django.urls import include, path
from rest_framework.routers import DefaultRouter

from billing.views import FELViewSet

app_name = "billing"

router = DefaultRouter()
router.register(r"fel", FELViewSet, basename="fel")

urlpatterns = [
    path("", include(router.urls)),
]
