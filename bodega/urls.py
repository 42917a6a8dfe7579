# bodega/urls.py
# -*- coding: utf-8 -*-
"""
Rutas del workflow de inventario.

En el urls.py del proyecto:
    path("api/bodega/", include("bodega.urls", namespace="bodega"))

Expone:
    /api/bodega/workflow/actions/
    /api/bodega/workflow/next-states/
    /api/bodega/workflow/transition-check/
    /api/bodega/workflow/can-perform/
    /api/bodega/workflow/confirmation/
    /api/bodega/workflow/capabilities/
"""
from __future__ import annotations

from django.urls import include, path
from rest_framework.routers import DefaultRouter

from .views import InventoryWorkflowViewSet

app_name = "bodega"

router = DefaultRouter()
router.register(r"workflow", InventoryWorkflowViewSet, basename="workflow")

urlpatterns = [
    path("", include(router.urls)),
]
