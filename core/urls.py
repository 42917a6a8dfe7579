# core/urls.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from django.http import JsonResponse
from django.urls import include, path
from django.views.decorators.csrf import ensure_csrf_cookie


# Endpoint explícito para setear cookie CSRF (lo consume la consola web)
@ensure_csrf_cookie
def set_csrf_cookie(_request):
    return JsonResponse({"ok": True})


urlpatterns = [
    path("api/auth/csrf/", set_csrf_cookie),

    # =========================
    # Workflows (Inventario + FEL)
    # =========================
    path("api/bodega/", include("bodega.urls", namespace="bodega")),
    path("api/billing/", include("billing.urls", namespace="billing")),
]
