# billing/services/fel/__init__.py
# -*- coding: utf-8 -*-
"""
FEL (Facturación Electrónica en Línea, SAT Guatemala).

- records: FELInfo / FiscalInvoice / ProcessingSession.
- eligibility: qué documento (factura FEL / comprobante) puede emitir una orden.
- recovery: error FEL -> acciones recomendadas.
- client: transporte REST hacia el certificador.
- store: último estado FEL por factura, sesiones y reservas de envío
  (cache compartida).
- coordinator: ciclo de vida de un envío (sesión, polling, timeout, reintento).

Las implementaciones se eligen en settings (FEL_TRANSPORT_CLASS,
FEL_INVOICE_STORE_CLASS, FEL_SESSION_REGISTRY_CLASS, FEL_ORDER_SERVICE_CLASS).
"""
from __future__ import annotations

import threading
from typing import Optional

from django.conf import settings
from django.utils.module_loading import import_string

from .coordinator import FELProcessingCoordinator

_DEFAULT_TRANSPORT = "billing.services.fel.client.CertifierClient"
_DEFAULT_STORE = "billing.services.fel.store.CacheInvoiceStore"
_DEFAULT_SESSION_REGISTRY = "billing.services.fel.store.CacheSessionRegistry"
_DEFAULT_ORDER_SERVICE = "billing.services.fel.client.OrderServiceClient"

_coordinator: Optional[FELProcessingCoordinator] = None
_coordinator_lock = threading.Lock()


def get_transport():
    path = getattr(settings, "FEL_TRANSPORT_CLASS", _DEFAULT_TRANSPORT)
    return import_string(path)()


def get_invoice_store():
    path = getattr(settings, "FEL_INVOICE_STORE_CLASS", _DEFAULT_STORE)
    return import_string(path)()


def get_session_registry():
    path = getattr(settings, "FEL_SESSION_REGISTRY_CLASS", _DEFAULT_SESSION_REGISTRY)
    return import_string(path)()


def get_order_service():
    path = getattr(settings, "FEL_ORDER_SERVICE_CLASS", _DEFAULT_ORDER_SERVICE)
    return import_string(path)()


def get_coordinator() -> FELProcessingCoordinator:
    """
    Coordinador del proceso. No guarda estado propio: sesiones y reservas viven
    en el registro compartido, así que todos los workers ven lo mismo.
    """
    global _coordinator
    with _coordinator_lock:
        if _coordinator is None:
            _coordinator = FELProcessingCoordinator(
                get_transport(),
                get_invoice_store(),
                sessions=get_session_registry(),
            )
        return _coordinator


def reset_coordinator() -> None:
    """Descarta el coordinador cacheado (tras cambiar settings FEL)."""
    global _coordinator
    with _coordinator_lock:
        _coordinator = None
