# billing/services/fel/store.py
# -*- coding: utf-8 -*-
"""
Estado FEL compartido entre procesos (workers web y Celery).

- CacheInvoiceStore: último estado FEL conocido por factura.
- CacheSessionRegistry: sesiones de procesamiento y reservas de envío por
  orden / factura.

Ambos viven en la cache de Django y exigen un backend compartido (Redis,
Memcached, base de datos): con LocMemCache cada proceso vería su propia copia.
"""
from __future__ import annotations

import logging
from typing import Any, List, Optional, Protocol

from django.conf import settings
from django.core.cache import caches
from django.core.exceptions import ImproperlyConfigured

from .records import FiscalInvoice, ProcessingSession

logger = logging.getLogger("billing.fel")

PROCESS_LOCAL_CACHE_BACKENDS = frozenset(
    {
        "django.core.cache.backends.locmem.LocMemCache",
        "django.core.cache.backends.dummy.DummyCache",
    }
)


def shared_cache_problems(alias: str = "default") -> List[str]:
    """Motivos por los que la cache `alias` no sirve para estado FEL compartido."""
    if not getattr(settings, "FEL_REQUIRE_SHARED_CACHE", True):
        return []
    config = settings.CACHES.get(alias)
    if config is None:
        return [f"No existe la cache '{alias}' en CACHES."]
    backend = config.get("BACKEND", "")
    if backend in PROCESS_LOCAL_CACHE_BACKENDS:
        return [
            f"La cache '{alias}' usa {backend}, que no se comparte entre procesos; "
            "configure Redis, Memcached o DatabaseCache (CACHE_BACKEND)."
        ]
    return []


def require_shared_cache(alias: str = "default") -> None:
    problems = shared_cache_problems(alias)
    if problems:
        raise ImproperlyConfigured(" ".join(problems))


class InvoiceStore(Protocol):
    """Último estado FEL conocido por invoice id (lo registra tras cada transición)."""

    def get(self, invoice_id: int) -> Optional[FiscalInvoice]:
        ...

    def save(self, invoice: FiscalInvoice) -> None:
        ...


class SessionRegistry(Protocol):
    """
    Sesiones de procesamiento por invoice id y reservas de envío.

    Una reserva (`claim`) marca una orden o factura con un envío remoto en
    vuelo; sólo la obtiene quien llega primero.
    """

    def get(self, invoice_id: int) -> Optional[ProcessingSession]:
        ...

    def save(self, session: ProcessingSession) -> None:
        ...

    def delete(self, invoice_id: int) -> None:
        ...

    def claim(self, key: str, owner: Any, timeout: int) -> bool:
        ...

    def hold(self, key: str, owner: Any, timeout: int) -> None:
        ...

    def release(self, key: str, owner: Any = None) -> None:
        ...

    def release_submission(self, invoice_id: int, order_id: Optional[int] = None) -> None:
        ...


def order_claim_key(order_id: Any) -> str:
    return f"order:{order_id}"


def invoice_claim_key(invoice_id: Any) -> str:
    return f"invoice:{invoice_id}"


class CacheInvoiceStore:
    """InvoiceStore sobre el framework de cache de Django (backend compartido)."""

    key_prefix = "fel:invoice"

    def __init__(self, alias: str = "default", timeout: Optional[int] = None):
        require_shared_cache(alias)
        self.cache = caches[alias]
        self.timeout = timeout or getattr(settings, "FEL_INVOICE_CACHE_TIMEOUT", 60 * 60 * 24)

    def _key(self, invoice_id: int) -> str:
        return f"{self.key_prefix}:{invoice_id}"

    def get(self, invoice_id: int) -> Optional[FiscalInvoice]:
        data = self.cache.get(self._key(invoice_id))
        if data is None:
            return None
        return FiscalInvoice.from_payload(data)

    def save(self, invoice: FiscalInvoice) -> None:
        self.cache.set(self._key(invoice.id), invoice.to_dict(), self.timeout)
        logger.debug(
            "Factura %s registrada con fel_status=%s (intentos=%s/%s)",
            invoice.id,
            invoice.fel.fel_status,
            invoice.fel.fel_attempts,
            invoice.fel.fel_max_attempts,
        )


class CacheSessionRegistry:
    """
    SessionRegistry sobre la cache de Django.

    `claim` usa `cache.add`, atómico en los backends compartidos, así que la
    regla de un envío por orden / factura vale entre procesos.
    """

    session_prefix = "fel:session"
    claim_prefix = "fel:claim"

    def __init__(self, alias: str = "default", timeout: Optional[int] = None):
        require_shared_cache(alias)
        self.cache = caches[alias]
        self.timeout = timeout or getattr(settings, "FEL_SESSION_CACHE_TIMEOUT", 60 * 60 * 24)

    def _session_key(self, invoice_id: int) -> str:
        return f"{self.session_prefix}:{invoice_id}"

    def _claim_key(self, key: str) -> str:
        return f"{self.claim_prefix}:{key}"

    # -------------------------
    # Sesiones
    # -------------------------

    def get(self, invoice_id: int) -> Optional[ProcessingSession]:
        state = self.cache.get(self._session_key(invoice_id))
        if state is None:
            return None
        return ProcessingSession.from_state(state)

    def save(self, session: ProcessingSession) -> None:
        self.cache.set(self._session_key(session.invoice_id), session.to_state(), self.timeout)

    def delete(self, invoice_id: int) -> None:
        self.cache.delete(self._session_key(invoice_id))

    # -------------------------
    # Reservas
    # -------------------------

    def claim(self, key: str, owner: Any, timeout: int) -> bool:
        return bool(self.cache.add(self._claim_key(key), owner, timeout))

    def hold(self, key: str, owner: Any, timeout: int) -> None:
        self.cache.set(self._claim_key(key), owner, timeout)

    def owner(self, key: str) -> Any:
        return self.cache.get(self._claim_key(key))

    def release(self, key: str, owner: Any = None) -> None:
        """Libera la reserva; con `owner` sólo si sigue siendo suya."""
        cache_key = self._claim_key(key)
        if owner is not None and self.cache.get(cache_key) != owner:
            return
        self.cache.delete(cache_key)

    def release_submission(self, invoice_id: int, order_id: Optional[int] = None) -> None:
        """Libera las reservas de un envío (factura y, si se conoce, su orden)."""
        self.release(invoice_claim_key(invoice_id), owner=invoice_id)
        if order_id is not None:
            self.release(order_claim_key(order_id), owner=invoice_id)
        logger.debug("Reservas FEL liberadas para factura %s (orden %s)", invoice_id, order_id)
