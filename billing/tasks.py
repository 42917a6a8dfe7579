# billing/tasks.py
from __future__ import annotations

import logging
from typing import Any, Dict

from celery import shared_task

from django.conf import settings

from billing.services.fel import get_invoice_store, get_session_registry, get_transport
from billing.services.fel.exceptions import FELTransportError
from billing.services.fel.records import ACTIVE_STATUSES

logger = logging.getLogger(__name__)


# =====================================================
# Tarea: Conciliación FEL tras cancelación local (con backoff)
# =====================================================


@shared_task(
    bind=True,
    max_retries=6,
    default_retry_delay=60,  # no se usa directamente; hacemos nuestro propio backoff
)
def reconcile_fel_status_task(self, invoice_id: int) -> Dict[str, Any]:
    """
    Consulta en el certificador el estado REAL de una factura cuya sesión se
    canceló localmente y lo registra en el store.

    - Si SAT sigue procesando (pending / processing), reprograma esta misma
      tarea con backoff exponencial: 1, 2, 4, 8, 16, 32 minutos.
    - Con estado final libera las reservas de la orden y la factura, que la
      cancelación había mantenido.
    - Si el estado final difiere del que veía la sesión cancelada (p.ej. SAT
      autorizó igualmente), se deja constancia en el log.
    """
    max_retries = getattr(settings, "FEL_RECONCILE_MAX_RETRIES", self.max_retries)
    store = get_invoice_store()
    previous = store.get(invoice_id)

    logger.info("reconcile_fel_status_task iniciado para invoice_id=%s", invoice_id)

    try:
        invoice = get_transport().poll_status(invoice_id)
    except FELTransportError as exc:
        logger.warning(
            "reconcile_fel_status_task: no se pudo consultar factura %s (code=%s): %s",
            invoice_id,
            exc.code,
            exc,
        )
        if exc.status_code != 404 and self.request.retries < max_retries:
            countdown = 60 * (2**self.request.retries)
            raise self.retry(exc=exc, countdown=countdown, max_retries=max_retries)
        return {"ok": False, "invoice_id": invoice_id, "error": str(exc), "code": exc.code}

    invoice = invoice.keeping_attempts_of(previous)
    store.save(invoice)
    status = invoice.fel.fel_status

    if status in ACTIVE_STATUSES:
        if self.request.retries < max_retries:
            countdown = 60 * (2**self.request.retries)  # 1m, 2m, 4m, 8m, ...
            logger.info(
                "Factura %s sigue en %s, reintento reconcile_fel_status_task en %s segundos.",
                invoice_id,
                status,
                countdown,
            )
            raise self.retry(countdown=countdown, max_retries=max_retries)
        logger.warning(
            "Factura %s sigue en %s tras %s conciliaciones; la reserva vence sola.",
            invoice_id,
            status,
            self.request.retries,
        )
    else:
        order_id = invoice.order_id if invoice.order_id is not None else getattr(previous, "order_id", None)
        get_session_registry().release_submission(invoice_id, order_id)

    if previous is not None and previous.fel.fel_status != status:
        logger.warning(
            "Factura %s cambió de %s a %s después de la cancelación local (uuid=%s).",
            invoice_id,
            previous.fel.fel_status,
            status,
            invoice.fel.fel_uuid,
        )

    logger.info(
        "reconcile_fel_status_task finalizado para invoice_id=%s, fel_status=%s",
        invoice_id,
        status,
    )
    return {
        "ok": True,
        "invoice_id": invoice_id,
        "fel_status": str(status),
        "fel_uuid": invoice.fel.fel_uuid,
        "changed": previous is not None and previous.fel.fel_status != status,
    }
