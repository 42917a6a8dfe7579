# billing/checks.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from django.core.checks import Error, register

from billing.services.fel.store import shared_cache_problems


@register()
def fel_shared_cache_check(app_configs=None, **kwargs):
    """Sesiones y reservas FEL necesitan una cache compartida por web y Celery."""
    return [
        Error(problem, hint="Defina CACHE_BACKEND / CACHE_LOCATION.", id="billing.E001")
        for problem in shared_cache_problems("default")
    ]
