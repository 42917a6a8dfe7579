# billing/apps.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from django.apps import AppConfig


class BillingConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "billing"
    verbose_name = "Facturación FEL"

    def ready(self) -> None:
        from billing import checks  # noqa: F401
