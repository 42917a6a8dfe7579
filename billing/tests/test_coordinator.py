# billing/tests/test_coordinator.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from typing import Dict, Optional
from unittest.mock import MagicMock

from django.core.cache import cache
from django.test import SimpleTestCase

from billing.services.fel.coordinator import FELProcessingCoordinator
from billing.services.fel.exceptions import (
    FELError,
    FELRetryNotAllowedError,
    FELSessionActiveError,
    FELSessionNotFound,
    FELSubmissionError,
    FELTransportError,
)
from billing.services.fel.records import FELInfo, FiscalInvoice
from billing.services.fel.store import CacheSessionRegistry

UUID = "ABCDEF12-3456-7890-ABCD-EF1234567890"


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MemoryStore:
    def __init__(self) -> None:
        self.data: Dict[int, FiscalInvoice] = {}

    def get(self, invoice_id: int) -> Optional[FiscalInvoice]:
        return self.data.get(invoice_id)

    def save(self, invoice: FiscalInvoice) -> None:
        self.data[invoice.id] = invoice


def _invoice(status="pending", attempts=0, code=None, uuid=None, invoice_id=10, max_attempts=3):
    return FiscalInvoice(
        id=invoice_id,
        invoice_number=f"FAC-{invoice_id:04d}",
        order_id=55,
        fel=FELInfo(
            fel_status=status,
            fel_uuid=uuid,
            fel_error_code=code,
            fel_attempts=attempts,
            fel_max_attempts=max_attempts,
        ),
    )


class CoordinatorTestMixin:
    def setUp(self) -> None:
        # sesiones y reservas viven en la cache compartida
        cache.clear()
        self.addCleanup(cache.clear)
        self.clock = FakeClock()
        self.store = MemoryStore()
        self.transport = MagicMock()
        self.reconciler = MagicMock()
        self.coordinator = self._coordinator()

    def _coordinator(self):
        return FELProcessingCoordinator(
            self.transport,
            self.store,
            sessions=CacheSessionRegistry(),
            clock=self.clock,
            reconciler=self.reconciler,
            poll_interval=2,
            timeout_seconds=60,
            max_poll_failures=3,
        )

    def _start(self, **kwargs):
        self.transport.submit.return_value = _invoice(**kwargs)
        return self.coordinator.create_fel_invoice({"order_id": 55})


class CreateAndPollTests(CoordinatorTestMixin, SimpleTestCase):
    """
    Ciclo feliz y sesiones:

    - Crear abre una sesión pending y registra la factura.
    - Cada tick avanza timers y consulta cada poll_interval.
    - authorized -> progreso 100, sesión terminada.
    """

    def test_crear_abre_sesion(self):
        invoice = self._start()

        session = self.coordinator.get_session(invoice.id)
        self.assertEqual(session.status, "pending")
        self.assertTrue(session.is_active)
        self.assertEqual(session.order_id, 55)
        self.assertEqual(self.store.get(10), invoice)

    def test_autorizacion_por_polling(self):
        self._start()
        self.transport.poll_status.side_effect = [
            _invoice("processing"),
            _invoice("authorized", uuid=UUID),
        ]

        self.clock.advance(2)
        session = self.coordinator.tick(10)
        self.assertEqual(session.status, "processing")
        self.assertEqual(session.time_elapsed, 2)
        self.assertEqual(session.estimated_time_left, 58)
        self.assertGreater(session.progress, 0)

        self.clock.advance(2)
        session = self.coordinator.tick(10)
        self.assertEqual(session.status, "authorized")
        self.assertEqual(session.progress, 100)
        self.assertFalse(session.is_active)
        self.assertEqual(self.store.get(10).fel.fel_uuid, UUID)

    def test_no_consulta_antes_del_intervalo(self):
        self._start()
        self.transport.poll_status.return_value = _invoice("processing")

        self.clock.advance(2)
        self.coordinator.tick(10)
        self.clock.advance(1)
        self.coordinator.tick(10)

        self.assertEqual(self.transport.poll_status.call_count, 1)

    def test_progreso_monotono(self):
        self._start()
        self.transport.poll_status.return_value = _invoice("processing")
        seen = []
        for _ in range(10):
            self.clock.advance(2)
            seen.append(self.coordinator.tick(10).progress)
        self.assertEqual(seen, sorted(seen))
        self.assertLess(seen[-1], 100)

    def test_run_until_terminal(self):
        self._start()
        self.transport.poll_status.side_effect = [
            _invoice("processing"),
            _invoice("processing"),
            _invoice("rejected", code="invalid_nit"),
        ]

        session = self.coordinator.run_until_terminal(10, sleep=self.clock.advance)

        self.assertEqual(session.status, "rejected")
        self.assertEqual(session.last_error, "NIT del cliente es inválido")
        self.assertEqual(self.transport.poll_status.call_count, 3)

    def test_segundo_envio_de_la_misma_orden_rechazado(self):
        self._start()
        with self.assertRaises(FELSessionActiveError):
            self.coordinator.create_fel_invoice({"order_id": 55})
        self.assertEqual(self.transport.submit.call_count, 1)

    def test_fallo_de_envio(self):
        self.transport.submit.side_effect = FELTransportError("sin red", code="connection_timeout")
        with self.assertRaises(FELSubmissionError) as ctx:
            self.coordinator.create_fel_invoice({"order_id": 55})
        self.assertEqual(ctx.exception.code, "connection_timeout")

        # la orden queda libre para un nuevo intento
        self.transport.submit.side_effect = None
        self.transport.submit.return_value = _invoice()
        self.coordinator.create_fel_invoice({"order_id": 55})

    def test_tick_sin_sesion(self):
        with self.assertRaises(FELSessionNotFound):
            self.coordinator.tick(999)


class TimeoutAndFailureTests(CoordinatorTestMixin, SimpleTestCase):
    def test_timeout_a_los_60_segundos(self):
        self._start()
        self.transport.poll_status.return_value = _invoice("processing")

        session = self.coordinator.run_until_terminal(10, sleep=self.clock.advance)

        self.assertEqual(session.status, "timeout")
        self.assertEqual(session.time_elapsed, 60)
        stored = self.store.get(10).fel
        self.assertEqual(stored.fel_status, "timeout")
        self.assertEqual(stored.fel_error_code, "connection_timeout")

    def test_fallos_de_consulta_tolerados(self):
        self._start()
        self.transport.poll_status.side_effect = [
            FELTransportError("caído", code="server_error"),
            _invoice("processing"),
        ]

        self.clock.advance(2)
        session = self.coordinator.tick(10)
        self.assertEqual(session.status, "pending")
        self.assertEqual(session.poll_failures, 1)

        self.clock.advance(2)
        session = self.coordinator.tick(10)
        self.assertEqual(session.status, "processing")
        self.assertEqual(session.poll_failures, 0)

    def test_fallos_consecutivos_terminan_en_error(self):
        self._start()
        self.transport.poll_status.side_effect = FELTransportError("sin red", code="connection_timeout")

        for _ in range(3):
            self.clock.advance(2)
            session = self.coordinator.tick(10)

        self.assertEqual(session.status, "error")
        self.assertEqual(self.store.get(10).fel.fel_error_code, "connection_timeout")


class RetryTests(CoordinatorTestMixin, SimpleTestCase):
    def test_reintento_incrementa_intentos(self):
        self.store.save(_invoice("error", attempts=1, code="server_error"))
        self.transport.resubmit.return_value = _invoice("pending", attempts=1, code="server_error")

        invoice = self.coordinator.retry_fel(10)

        self.assertEqual(invoice.fel.fel_attempts, 2)
        self.assertIsNone(invoice.fel.fel_error_code)
        session = self.coordinator.get_session(10)
        self.assertEqual(session.status, "pending")
        self.assertEqual(session.progress, 0)

    def test_intentos_nunca_exceden_maximo(self):
        self.store.save(_invoice("timeout", attempts=2))
        self.transport.resubmit.return_value = _invoice("processing", attempts=3)

        invoice = self.coordinator.retry_fel(10)
        self.assertEqual(invoice.fel.fel_attempts, 3)

    def test_intentos_agotados(self):
        self.store.save(_invoice("error", attempts=3, code="server_error"))
        with self.assertRaises(FELRetryNotAllowedError):
            self.coordinator.retry_fel(10)
        self.transport.resubmit.assert_not_called()

    def test_duplicado_nunca_se_reintenta(self):
        self.store.save(_invoice("rejected", attempts=0, code="duplicate_document"))
        with self.assertRaises(FELRetryNotAllowedError):
            self.coordinator.retry_fel(10)
        self.transport.resubmit.assert_not_called()

    def test_estado_no_reintentable(self):
        self.store.save(_invoice("authorized", uuid=UUID))
        with self.assertRaises(FELRetryNotAllowedError):
            self.coordinator.retry_fel(10)

    def test_sesion_activa_bloquea_reintento(self):
        self._start()
        with self.assertRaises(FELSessionActiveError):
            self.coordinator.retry_fel(10)

    def test_factura_desconocida_se_consulta_remota(self):
        self.transport.poll_status.return_value = _invoice("error", attempts=0, code="server_error")
        self.transport.resubmit.return_value = _invoice("pending", attempts=1)

        invoice = self.coordinator.retry_fel(10)

        self.transport.poll_status.assert_called_once_with(10)
        self.assertEqual(invoice.fel.fel_attempts, 1)

    def test_intentos_no_se_pierden_entre_consultas(self):
        # el certificador no devuelve el conteo de intentos
        self.store.save(_invoice("error", attempts=0, code="server_error"))
        self.transport.resubmit.return_value = _invoice("processing", attempts=0)
        self.transport.poll_status.return_value = _invoice("error", attempts=0, code="server_error")

        for expected in (1, 2, 3):
            self.coordinator.retry_fel(10)
            session = self.coordinator.tick(10)
            self.assertEqual(session.status, "error")
            self.assertEqual(self.store.get(10).fel.fel_attempts, expected)

        self.assertFalse(session.to_dict()["can_retry"])
        with self.assertRaises(FELRetryNotAllowedError):
            self.coordinator.retry_fel(10)
        self.assertEqual(self.transport.resubmit.call_count, 3)


class SessionRetryFlagTests(CoordinatorTestMixin, SimpleTestCase):
    """`can_retry` de la sesión sigue las mismas reglas que retry_fel."""

    def _finish_with(self, invoice):
        self._start()
        self.transport.poll_status.return_value = invoice
        self.clock.advance(2)
        return self.coordinator.tick(10).to_dict()

    def test_duplicado_no_es_reintentable(self):
        data = self._finish_with(_invoice("rejected", attempts=0, code="duplicate_document"))
        self.assertEqual(data["status"], "rejected")
        self.assertFalse(data["can_retry"])

    def test_intentos_agotados_no_es_reintentable(self):
        data = self._finish_with(_invoice("error", attempts=3, code="server_error"))
        self.assertFalse(data["can_retry"])

    def test_error_transitorio_es_reintentable(self):
        data = self._finish_with(_invoice("error", attempts=1, code="server_error"))
        self.assertTrue(data["can_retry"])

    def test_sesion_activa_no_es_reintentable(self):
        self._start()
        self.assertFalse(self.coordinator.get_session(10).to_dict()["can_retry"])


class CancelAndResetTests(CoordinatorTestMixin, SimpleTestCase):
    def test_cancelar_es_local_y_agenda_conciliacion(self):
        self._start()

        result = self.coordinator.cancel_process(10)

        self.assertTrue(result["was_active"])
        self.assertFalse(result["remote_aborted"])
        self.assertTrue(result["reconciliation_scheduled"])
        self.reconciler.assert_called_once_with(10)
        self.assertIsNone(self.coordinator.get_session(10))

    def test_cancelar_detiene_el_seguimiento(self):
        self._start()
        self.coordinator.cancel_process(10)
        with self.assertRaises(FELSessionNotFound):
            self.coordinator.tick(10)
        self.transport.poll_status.assert_not_called()

    def test_resultado_de_consulta_tras_cancelar_se_ignora(self):
        self._start()

        def poll_and_cancel(invoice_id):
            self.coordinator.cancel_process(invoice_id)
            return _invoice("authorized", uuid=UUID)

        self.transport.poll_status.side_effect = poll_and_cancel
        self.clock.advance(2)
        session = self.coordinator.tick(10)

        self.assertTrue(session.cancelled)
        self.assertEqual(session.status, "pending")
        self.assertEqual(self.store.get(10).fel.fel_status, "pending")

    def test_fallo_al_agendar_conciliacion(self):
        self._start()
        self.reconciler.side_effect = RuntimeError("broker caído")

        result = self.coordinator.cancel_process(10)
        self.assertFalse(result["reconciliation_scheduled"])

    def test_cancelar_mantiene_la_orden_reservada(self):
        self._start(status="processing")

        result = self.coordinator.cancel_process(10)

        self.assertTrue(result["submission_locked"])
        with self.assertRaises(FELSessionActiveError):
            self.coordinator.create_fel_invoice({"order_id": 55})
        with self.assertRaises(FELSessionActiveError):
            self.coordinator.retry_fel(10)
        self.assertEqual(self.transport.submit.call_count, 1)
        self.transport.resubmit.assert_not_called()

    def test_conciliacion_libera_la_orden(self):
        self._start(status="processing")
        self.coordinator.cancel_process(10)

        self.coordinator.sessions.release_submission(10, 55)

        self.transport.submit.return_value = _invoice(invoice_id=11)
        self.coordinator.create_fel_invoice({"order_id": 55})
        self.assertEqual(self.transport.submit.call_count, 2)

    def test_cancelar_sesion_terminada_no_concilia(self):
        self._start(status="authorized", uuid=UUID)
        result = self.coordinator.cancel_process(10)
        self.assertFalse(result["was_active"])
        self.reconciler.assert_not_called()

    def test_reset(self):
        self._start()
        with self.assertRaises(FELSessionActiveError):
            self.coordinator.reset(10)

        self.transport.poll_status.return_value = _invoice("authorized", uuid=UUID)
        self.clock.advance(2)
        self.coordinator.tick(10)
        self.coordinator.reset(10)
        self.assertIsNone(self.coordinator.get_session(10))
        self.coordinator.reset(10)  # idempotente


class FailureReportTests(CoordinatorTestMixin, SimpleTestCase):
    def test_describe_failure(self):
        self.store.save(_invoice("error", attempts=1, code="invalid_nit"))
        report = self.coordinator.describe_failure(10)
        self.assertEqual(
            [a["type"] for a in report["recommended_actions"]],
            ["edit_client", "retry", "receipt"],
        )
        self.assertEqual(report["attempts_left"], 2)

    def test_descarga_solo_autorizadas(self):
        self.store.save(_invoice("error", code="server_error"))
        with self.assertRaises(FELError):
            self.coordinator.download_document(10)

        self.store.save(_invoice("authorized", uuid=UUID))
        self.transport.download_document.return_value = b"%PDF-1.4"
        self.assertEqual(self.coordinator.download_document(10), b"%PDF-1.4")


class SharedRegistryTests(CoordinatorTestMixin, SimpleTestCase):
    """
    Varios workers (coordinadores distintos) sobre la misma cache:

    - La sesión creada en uno se consulta desde otro.
    - La reserva de la orden vale para todos.
    """

    def test_sesion_visible_desde_otro_worker(self):
        self._start()
        other = self._coordinator()
        self.transport.poll_status.return_value = _invoice("authorized", uuid=UUID)
        self.clock.advance(2)

        session = other.tick(10)

        self.assertEqual(session.status, "authorized")
        self.assertEqual(self.coordinator.get_session(10).status, "authorized")

    def test_envio_duplicado_desde_otro_worker(self):
        self._start()
        with self.assertRaises(FELSessionActiveError):
            self._coordinator().create_fel_invoice({"order_id": 55})
        self.assertEqual(self.transport.submit.call_count, 1)

    def test_sesion_terminada_libera_la_orden(self):
        self._start()
        self.transport.poll_status.return_value = _invoice("rejected", code="invalid_nit")
        self.clock.advance(2)
        self.coordinator.tick(10)

        self.transport.submit.return_value = _invoice(invoice_id=11)
        self._coordinator().create_fel_invoice({"order_id": 55})
        self.assertEqual(self.transport.submit.call_count, 2)

    def test_reservas(self):
        registry = CacheSessionRegistry()

        self.assertTrue(registry.claim("order:1", "a", 60))
        self.assertFalse(registry.claim("order:1", "b", 60))

        registry.release("order:1", owner="b")
        self.assertEqual(registry.owner("order:1"), "a")
        registry.release("order:1", owner="a")
        self.assertIsNone(registry.owner("order:1"))


class ReceiptTests(CoordinatorTestMixin, SimpleTestCase):
    def test_comprobante(self):
        self.transport.create_receipt.return_value = b"%PDF-1.4"

        content = self.coordinator.create_receipt({"order_id": 55, "notes": ""})

        self.assertEqual(content, b"%PDF-1.4")
        # la orden queda libre
        self._start()

    def test_envio_fel_en_curso_bloquea_comprobante(self):
        self._start()
        with self.assertRaises(FELSessionActiveError):
            self.coordinator.create_receipt({"order_id": 55})
        self.transport.create_receipt.assert_not_called()

    def test_fallo_del_api(self):
        self.transport.create_receipt.side_effect = FELTransportError("caído", code="server_error")

        with self.assertRaises(FELSubmissionError) as ctx:
            self.coordinator.create_receipt({"order_id": 55})

        self.assertEqual(ctx.exception.code, "server_error")
        self.transport.create_receipt.side_effect = None
        self.transport.create_receipt.return_value = b"%PDF-1.4"
        self.assertEqual(self.coordinator.create_receipt({"order_id": 55}), b"%PDF-1.4")
