# bodega/apps.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from django.apps import AppConfig


class BodegaConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "bodega"
    verbose_name = "Bodega / Workflow de inventario"
