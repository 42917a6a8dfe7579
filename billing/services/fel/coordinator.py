# billing/services/fel/coordinator.py
# -*- coding: utf-8 -*-
"""
Orquestación del envío FEL de una factura.

Máquina de estados por envío:

    pending -> processing -> authorized | rejected | error | timeout

- authorized / rejected los decide SAT (terminales).
- error / timeout son terminales locales pero reintentables.

El coordinador es cooperativo: cada `tick()` actualiza timers y, si toca,
consulta el estado remoto. No bloquea durante la ventana de autorización
(15-60s); `run_until_terminal()` es sólo un lazo de conveniencia sobre `tick()`.

Garantía: como máximo UN envío remoto en vuelo por orden y por factura. Las
reservas viven en el registro compartido (cache), así que valen entre workers
web y Celery. Un segundo envío se rechaza con FELSessionActiveError antes de
tocar el certificador.

Cancelar es local: deja de observar la sesión y agenda una conciliación en
background (Celery) que registra el estado real que decidió SAT. Las reservas
de la orden y la factura se mantienen hasta esa conciliación.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Mapping, Optional, Union

from django.conf import settings

from .client import FELTransport
from .exceptions import (
    FELError,
    FELInvoiceNotFound,
    FELRetryNotAllowedError,
    FELSessionActiveError,
    FELSessionNotFound,
    FELSubmissionError,
    FELTransportError,
)
from .records import (
    ACTIVE_STATUSES,
    FEL_ERROR_MESSAGES,
    RETRYABLE_STATUSES,
    FELStatus,
    FiscalInvoice,
    ProcessingSession,
)
from .recovery import NON_RETRYABLE_CODES, build_error_report, can_retry, get_friendly_message
from .store import (
    CacheSessionRegistry,
    InvoiceStore,
    SessionRegistry,
    invoice_claim_key,
    order_claim_key,
)

logger = logging.getLogger("billing.fel")

Reconciler = Callable[[int], Any]

MAX_PROGRESS_BEFORE_TERMINAL = 99

# Dueño de la reserva de una orden mientras aún no hay invoice id
SUBMITTING = "submitting"
RECEIPT = "receipt"


def schedule_reconciliation(invoice_id: int) -> None:
    """Agenda la conciliación del estado real en SAT (tarea Celery)."""
    from billing.tasks import reconcile_fel_status_task

    reconcile_fel_status_task.delay(invoice_id)


class FELProcessingCoordinator:
    def __init__(
        self,
        transport: FELTransport,
        store: InvoiceStore,
        *,
        sessions: Optional[SessionRegistry] = None,
        clock: Callable[[], float] = time.time,
        reconciler: Optional[Reconciler] = None,
        poll_interval: Optional[float] = None,
        timeout_seconds: Optional[int] = None,
        max_poll_failures: Optional[int] = None,
        reconcile_hold_seconds: Optional[int] = None,
    ):
        self.transport = transport
        self.store = store
        self.sessions = sessions if sessions is not None else CacheSessionRegistry()
        # Reloj de pared: las sesiones se comparten entre procesos.
        self.clock = clock
        self.reconciler = reconciler or schedule_reconciliation
        self.poll_interval = (
            poll_interval
            if poll_interval is not None
            else getattr(settings, "FEL_POLL_INTERVAL_SECONDS", 2)
        )
        self.timeout_seconds = int(
            timeout_seconds
            if timeout_seconds is not None
            else getattr(settings, "FEL_TIMEOUT_SECONDS", 60)
        )
        self.max_poll_failures = int(
            max_poll_failures
            if max_poll_failures is not None
            else getattr(settings, "FEL_MAX_POLL_FAILURES", 3)
        )
        self.reconcile_hold_seconds = int(
            reconcile_hold_seconds
            if reconcile_hold_seconds is not None
            else getattr(settings, "FEL_RECONCILE_HOLD_SECONDS", 2 * 60 * 60)
        )
        # Una sesión sin ticks expira sola: la reserva dura el doble del tiempo máximo.
        self.claim_timeout = max(self.timeout_seconds * 2, 1)

        # Serializa lectura-modificación-escritura de sesiones dentro del proceso.
        self._lock = threading.RLock()

    # -------------------------
    # Helpers internos
    # -------------------------

    def _busy_order(self, order_id: Any) -> FELSessionActiveError:
        return FELSessionActiveError(f"La orden {order_id} ya tiene un envío FEL en curso.")

    def _busy_invoice(self, invoice_id: int) -> FELSessionActiveError:
        return FELSessionActiveError(f"La factura {invoice_id} ya se está procesando.")

    def _hold_submission(self, session: ProcessingSession, timeout: int) -> None:
        """Fija las reservas de la sesión a nombre de su factura."""
        self.sessions.hold(invoice_claim_key(session.invoice_id), session.invoice_id, timeout)
        if session.order_id is not None:
            self.sessions.hold(order_claim_key(session.order_id), session.invoice_id, timeout)

    def _release_submission(self, session: ProcessingSession) -> None:
        self.sessions.release_submission(session.invoice_id, session.order_id)

    def _save_remote(self, invoice: FiscalInvoice) -> FiscalInvoice:
        """Registra el estado remoto sin perder el conteo de intentos ya conocido."""
        invoice = invoice.keeping_attempts_of(self.store.get(invoice.id))
        self.store.save(invoice)
        return invoice

    def _load_invoice(self, invoice_id: int) -> FiscalInvoice:
        invoice = self.store.get(invoice_id)
        if invoice is not None:
            return invoice
        try:
            invoice = self.transport.poll_status(invoice_id)
        except FELTransportError as exc:
            if exc.status_code == 404:
                raise FELInvoiceNotFound(f"Factura {invoice_id} no encontrada.") from exc
            raise
        self.store.save(invoice)
        return invoice

    def _new_session(self, invoice: FiscalInvoice, order_id: Any = None) -> ProcessingSession:
        return ProcessingSession(
            started_at=self.clock(),
            timeout_seconds=self.timeout_seconds,
            order_id=invoice.order_id if invoice.order_id is not None else order_id,
            invoice_id=invoice.id,
            status=FELStatus.PENDING,
            estimated_time_left=self.timeout_seconds,
        )

    def _update_timers(self, session: ProcessingSession, now: float) -> None:
        elapsed = max(int(now - session.started_at), session.time_elapsed)
        session.time_elapsed = elapsed
        session.estimated_time_left = max(session.timeout_seconds - elapsed, 0)
        if session.timeout_seconds > 0:
            estimate = int(elapsed * 100 / session.timeout_seconds)
        else:
            estimate = MAX_PROGRESS_BEFORE_TERMINAL
        session.progress = max(session.progress, min(estimate, MAX_PROGRESS_BEFORE_TERMINAL))

    def _apply_remote_state(self, session: ProcessingSession, invoice: FiscalInvoice) -> None:
        previous = session.status
        status = invoice.fel.fel_status
        session.status = status
        session.retryable = can_retry(invoice.fel)

        if status == FELStatus.AUTHORIZED:
            session.progress = 100
            session.estimated_time_left = 0
            session.last_error = None
            logger.info(
                "Factura %s autorizada por SAT (uuid=%s) en %ss",
                invoice.id,
                invoice.fel.fel_uuid,
                session.time_elapsed,
            )
        elif status in RETRYABLE_STATUSES:
            session.estimated_time_left = None
            session.last_error = get_friendly_message(invoice.fel)
            logger.warning(
                "Factura %s terminó en %s (code=%s, intentos=%s/%s)",
                invoice.id,
                status,
                invoice.fel.fel_error_code,
                invoice.fel.fel_attempts,
                invoice.fel.fel_max_attempts,
            )
        elif status != previous:
            logger.debug("Factura %s: %s -> %s", invoice.id, previous, status)

    def _record_local_outcome(
        self,
        session: ProcessingSession,
        status: str,
        code: Optional[str],
        message: str,
    ) -> None:
        """Registra un terminal local (error / timeout) en la sesión y en el store."""
        invoice = self.store.get(session.invoice_id)
        if invoice is not None:
            invoice = invoice.with_fel(
                fel_status=status,
                fel_uuid=None,
                fel_error_code=code,
                fel_error_message=message,
            )
            self.store.save(invoice)
            session.last_error = get_friendly_message(invoice.fel)
            session.retryable = can_retry(invoice.fel)
        else:
            session.last_error = message
            session.retryable = code not in NON_RETRYABLE_CODES
        session.status = status

    def _fail_session(self, session: ProcessingSession, code: str, message: str) -> None:
        session.estimated_time_left = None
        self._record_local_outcome(session, FELStatus.ERROR, code, message)
        logger.error(
            "Sesión FEL de factura %s en error tras %s fallos de consulta (code=%s): %s",
            session.invoice_id,
            session.poll_failures,
            code,
            message,
        )

    def _expire(self, session: ProcessingSession) -> None:
        invoice = self.store.get(session.invoice_id)
        code = (invoice.fel.fel_error_code if invoice else None) or "connection_timeout"
        session.estimated_time_left = 0
        self._record_local_outcome(
            session,
            FELStatus.TIMEOUT,
            code,
            f"SAT no respondió en {session.timeout_seconds} segundos.",
        )
        logger.warning(
            "Sesión FEL de factura %s agotó el tiempo máximo (%ss)",
            session.invoice_id,
            session.timeout_seconds,
        )

    def _store_session(self, session: ProcessingSession) -> ProcessingSession:
        """Guarda la sesión y, si terminó, libera sus reservas."""
        self.sessions.save(session)
        if not session.is_active:
            self._release_submission(session)
        return session

    # -------------------------
    # Operaciones públicas
    # -------------------------

    def create_fel_invoice(self, request: Mapping[str, Any]) -> FiscalInvoice:
        """
        Envía la orden al certificador y abre la sesión de procesamiento.

        Raises:
            FELSessionActiveError: la orden ya tiene un envío en curso.
            FELSubmissionError: el certificador no registró el documento.
        """
        order_id = request["order_id"]
        order_key = order_claim_key(order_id)
        if not self.sessions.claim(order_key, SUBMITTING, self.claim_timeout):
            raise self._busy_order(order_id)

        held = False
        try:
            try:
                invoice = self.transport.submit(request)
            except FELTransportError as exc:
                logger.error("No se pudo enviar la orden %s a FEL: %s (code=%s)", order_id, exc, exc.code)
                raise FELSubmissionError(str(exc), code=exc.code) from exc

            with self._lock:
                invoice = self._save_remote(invoice)
                if not self.sessions.claim(invoice_claim_key(invoice.id), invoice.id, self.claim_timeout):
                    logger.warning(
                        "Factura %s ya tenía un envío en curso; se conserva la sesión existente.",
                        invoice.id,
                    )
                    return invoice

                session = self._new_session(invoice, order_id)
                self._apply_remote_state(session, invoice)
                if session.is_active:
                    self._hold_submission(session, self.claim_timeout)
                    held = True
                self._store_session(session)
        finally:
            if not held:
                self.sessions.release(order_key, owner=SUBMITTING)

        logger.info(
            "Factura FEL %s (%s) creada para orden %s en estado %s",
            invoice.id,
            invoice.invoice_number,
            order_id,
            invoice.fel.fel_status,
        )
        return invoice

    def create_receipt(self, request: Mapping[str, Any]) -> bytes:
        """
        Emite el comprobante sin valor fiscal de la orden y devuelve su PDF.

        La elegibilidad (resolve_document_choice) la valida quien llama; aquí
        sólo se garantiza que la orden no tenga un envío FEL en vuelo.

        Raises:
            FELSessionActiveError: la orden tiene un envío FEL en curso.
            FELSubmissionError: el API no generó el comprobante.
        """
        order_id = request["order_id"]
        order_key = order_claim_key(order_id)
        if not self.sessions.claim(order_key, RECEIPT, self.claim_timeout):
            raise self._busy_order(order_id)

        try:
            content = self.transport.create_receipt(request)
        except FELTransportError as exc:
            logger.error("No se pudo generar comprobante para orden %s: %s (code=%s)", order_id, exc, exc.code)
            raise FELSubmissionError(str(exc), code=exc.code) from exc
        finally:
            self.sessions.release(order_key, owner=RECEIPT)

        logger.info("Comprobante generado para orden %s (%s bytes)", order_id, len(content))
        return content

    def tick(self, invoice_id: int) -> ProcessingSession:
        """Un paso cooperativo: actualiza timers y consulta el estado si corresponde."""
        with self._lock:
            session = self.sessions.get(invoice_id)
            if session is None:
                raise FELSessionNotFound(f"No hay sesión FEL para la factura {invoice_id}.")
            if not session.is_active:
                return session

            now = self.clock()
            self._update_timers(session, now)
            if session.time_elapsed >= session.timeout_seconds:
                self._expire(session)
                return self._store_session(session)

            if session.last_poll_at is not None and now - session.last_poll_at < self.poll_interval:
                return self._store_session(session)
            session.last_poll_at = now
            self._store_session(session)

        # La consulta remota se hace sin el lock; la sesión puede cancelarse mientras tanto.
        try:
            invoice = self.transport.poll_status(invoice_id)
            error: Optional[FELTransportError] = None
        except FELTransportError as exc:
            invoice = None
            error = exc

        with self._lock:
            current = self.sessions.get(invoice_id)
            if current is None or current.started_at != session.started_at or not current.is_active:
                logger.debug("Resultado de consulta ignorado para factura %s (sesión cerrada)", invoice_id)
                if current is None:
                    session.cancelled = True
                    return session
                return current
            session = current

            if error is not None:
                session.poll_failures += 1
                session.last_error = FEL_ERROR_MESSAGES.get(error.code, str(error))
                logger.warning(
                    "Fallo consultando estado FEL de factura %s (%s/%s): %s",
                    invoice_id,
                    session.poll_failures,
                    self.max_poll_failures,
                    error,
                )
                if session.poll_failures >= self.max_poll_failures:
                    self._fail_session(session, error.code or "connection_timeout", str(error))
                return self._store_session(session)

            session.poll_failures = 0
            session.last_error = None
            invoice = self._save_remote(invoice)
            self._apply_remote_state(session, invoice)
            return self._store_session(session)

    def run_until_terminal(
        self,
        invoice_id: int,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> ProcessingSession:
        """Lazo de conveniencia (CLI / worker); en web usar `tick()` por request."""
        while True:
            session = self.tick(invoice_id)
            if not session.is_active:
                return session
            sleep(self.poll_interval)

    def retry_fel(self, invoice_id: int) -> FiscalInvoice:
        """
        Reenvía una factura en error / rejected / timeout.

        Raises:
            FELSessionActiveError: hay una sesión activa o un envío en curso.
            FELRetryNotAllowedError: estado, intentos agotados o documento duplicado.
            FELSubmissionError: el certificador no aceptó el reenvío.
        """
        invoice_key = invoice_claim_key(invoice_id)
        if not self.sessions.claim(invoice_key, invoice_id, self.claim_timeout):
            raise self._busy_invoice(invoice_id)

        order_key: Optional[str] = None
        held = False
        try:
            invoice = self._load_invoice(invoice_id)
            fel = invoice.fel

            if fel.fel_status not in RETRYABLE_STATUSES:
                raise FELRetryNotAllowedError(
                    f"La factura {invoice.invoice_number} está en estado {fel.fel_status}; no admite reintento."
                )
            if not fel.has_attempts_left:
                raise FELRetryNotAllowedError(
                    f"Se agotaron los intentos FEL ({fel.fel_attempts}/{fel.fel_max_attempts}). "
                    "Genere un comprobante o contacte soporte."
                )
            if fel.fel_error_code in NON_RETRYABLE_CODES:
                raise FELRetryNotAllowedError(
                    "El documento ya existe en SAT; reintentar lo duplicaría. Contacte soporte."
                )

            if invoice.order_id is not None:
                if not self.sessions.claim(order_claim_key(invoice.order_id), invoice_id, self.claim_timeout):
                    raise self._busy_order(invoice.order_id)
                order_key = order_claim_key(invoice.order_id)

            try:
                remote = self.transport.resubmit(invoice_id)
            except FELTransportError as exc:
                logger.error("Reintento FEL de factura %s falló: %s (code=%s)", invoice_id, exc, exc.code)
                raise FELSubmissionError(str(exc), code=exc.code) from exc

            ceiling = remote.fel.fel_max_attempts
            attempts = min(max(remote.fel.fel_attempts, fel.fel_attempts + 1), ceiling)
            changes: Dict[str, Any] = {"fel_attempts": attempts}
            if remote.fel.fel_status in ACTIVE_STATUSES:
                changes.update(fel_error_code=None, fel_error_message=None)
            updated = remote.with_fel(**changes)

            with self._lock:
                self.store.save(updated)
                session = self._new_session(updated, invoice.order_id)
                self._apply_remote_state(session, updated)
                if session.is_active:
                    self._hold_submission(session, self.claim_timeout)
                    held = True
                self._store_session(session)
        finally:
            if not held:
                self.sessions.release(invoice_key, owner=invoice_id)
                if order_key is not None:
                    self.sessions.release(order_key, owner=invoice_id)

        logger.info(
            "Factura %s reenviada a FEL (intento %s/%s)",
            invoice_id,
            updated.fel.fel_attempts,
            updated.fel.fel_max_attempts,
        )
        return updated

    def cancel_process(self, invoice_id: int) -> Dict[str, Any]:
        """
        Cancelación LOCAL: deja de observar la sesión y la descarta.

        El certificador no ofrece abortar un envío, por lo que SAT puede
        autorizar el documento igualmente. Si la sesión estaba activa se agenda
        la conciliación y la orden / factura siguen reservadas hasta que ésta
        registre el estado final (o venza FEL_RECONCILE_HOLD_SECONDS).
        """
        with self._lock:
            session = self.sessions.get(invoice_id)
            if session is None:
                raise FELSessionNotFound(f"No hay sesión FEL para la factura {invoice_id}.")
            self.sessions.delete(invoice_id)
            was_active = session.is_active
            session.cancelled = True
            if was_active:
                self._hold_submission(session, self.reconcile_hold_seconds)

        scheduled = False
        if was_active:
            try:
                self.reconciler(invoice_id)
                scheduled = True
            except Exception:  # noqa: BLE001
                logger.exception("No se pudo agendar la conciliación FEL de la factura %s", invoice_id)

        logger.info(
            "Sesión FEL de factura %s cancelada localmente (estado=%s, conciliación=%s)",
            invoice_id,
            session.status,
            scheduled,
        )
        return {
            "invoice_id": invoice_id,
            "status": str(session.status),
            "was_active": was_active,
            "remote_aborted": False,
            "reconciliation_scheduled": scheduled,
            "submission_locked": was_active,
            "detail": (
                "Se detuvo el seguimiento local. SAT puede completar la autorización; "
                "no se aceptan nuevos envíos de esta orden hasta conocer el estado final."
                if was_active
                else "La sesión ya había terminado; se descartó."
            ),
        }

    def reset(self, invoice_id: int) -> None:
        """Descarta la sesión terminada (idempotente). No aplica a sesiones activas."""
        with self._lock:
            session = self.sessions.get(invoice_id)
            if session is None:
                return
            if session.is_active:
                raise FELSessionActiveError(
                    f"La factura {invoice_id} sigue en proceso; cancele antes de reiniciar."
                )
            self.sessions.delete(invoice_id)

    def get_session(self, invoice_id: int) -> Optional[ProcessingSession]:
        return self.sessions.get(invoice_id)

    def describe_failure(self, invoice: Union[FiscalInvoice, int]) -> Dict[str, Any]:
        if not isinstance(invoice, FiscalInvoice):
            invoice = self._load_invoice(invoice)
        return build_error_report(invoice)

    def download_document(self, invoice_id: int) -> bytes:
        invoice = self._load_invoice(invoice_id)
        if invoice.fel.fel_status != FELStatus.AUTHORIZED:
            raise FELError(
                f"La factura {invoice.invoice_number} no está autorizada; no hay documento FEL."
            )
        return self.transport.download_document(invoice_id)
