# billing/tests/test_fel_api.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from django.core.cache import cache
from django.test import SimpleTestCase

from rest_framework import status
from rest_framework.test import APIRequestFactory, force_authenticate

from billing.services.fel.coordinator import FELProcessingCoordinator
from billing.services.fel.exceptions import FELTransportError
from billing.tests.test_coordinator import UUID, FakeClock, MemoryStore, _invoice
from billing.views import FELViewSet


def _user(role="operario", **extra):
    data = {
        "is_authenticated": True,
        "is_superuser": False,
        "profile": SimpleNamespace(role=role),
        "groups": None,
    }
    data.update(extra)
    return SimpleNamespace(**data)


class FELAPITests(SimpleTestCase):
    """
    Endpoints FEL (/api/billing/fel/...):

    - invoices -> 201 con factura + sesión.
    - Envío duplicado -> 409; certificador caído -> 502.
    - retry rechazado -> 400; sin sesión -> 404.
    """

    def setUp(self) -> None:
        cache.clear()
        self.addCleanup(cache.clear)
        self.factory = APIRequestFactory()
        self.clock = FakeClock()
        self.store = MemoryStore()
        self.transport = MagicMock()
        self.reconciler = MagicMock()
        self.coordinator = FELProcessingCoordinator(
            self.transport,
            self.store,
            clock=self.clock,
            reconciler=self.reconciler,
            poll_interval=2,
            timeout_seconds=60,
        )
        patcher = patch("billing.views.get_coordinator", return_value=self.coordinator)
        patcher.start()
        self.addCleanup(patcher.stop)

    def _call(self, method, action_name, data=None, pk=None, user=None):
        view = FELViewSet.as_view({method: action_name})
        path = f"/api/billing/fel/{pk}/{action_name}/" if pk else f"/api/billing/fel/{action_name}/"
        if method == "get":
            request = self.factory.get(path, data or {})
        else:
            request = self.factory.post(path, data or {}, format="json")
        force_authenticate(request, user=user or _user())
        if pk is not None:
            return view(request, pk=str(pk))
        return view(request)

    # -------------------------
    # Envío
    # -------------------------

    def test_crear_factura_fel(self):
        self.transport.submit.return_value = _invoice()

        resp = self._call("post", "invoices", {"order_id": 55, "payment_method": "cash"})

        self.assertEqual(resp.status_code, status.HTTP_201_CREATED)
        self.assertEqual(resp.data["invoice"]["invoice_number"], "FAC-0010")
        self.assertEqual(resp.data["session"]["status"], "pending")
        self.assertEqual(resp.data["session"]["estimated_time_left_display"], "1m 0s")
        submitted = self.transport.submit.call_args.args[0]
        self.assertEqual(submitted["order_id"], 55)

    def test_envio_duplicado_409(self):
        self.transport.submit.return_value = _invoice()
        self._call("post", "invoices", {"order_id": 55})

        resp = self._call("post", "invoices", {"order_id": 55})
        self.assertEqual(resp.status_code, status.HTTP_409_CONFLICT)

    def test_certificador_caido_502(self):
        self.transport.submit.side_effect = FELTransportError("sin red", code="connection_timeout")

        resp = self._call("post", "invoices", {"order_id": 55})

        self.assertEqual(resp.status_code, status.HTTP_502_BAD_GATEWAY)
        self.assertEqual(resp.data["code"], "connection_timeout")

    def test_sin_rol_no_puede_emitir(self):
        resp = self._call("post", "invoices", {"order_id": 55}, user=_user(role=None))
        self.assertEqual(resp.status_code, status.HTTP_403_FORBIDDEN)
        self.transport.submit.assert_not_called()

    def test_orden_invalida_400(self):
        resp = self._call("post", "invoices", {"order_id": 0})
        self.assertEqual(resp.status_code, status.HTTP_400_BAD_REQUEST)

    # -------------------------
    # Sesión
    # -------------------------

    def test_sesion_avanza(self):
        self.transport.submit.return_value = _invoice()
        self._call("post", "invoices", {"order_id": 55})
        self.transport.poll_status.return_value = _invoice("authorized", uuid=UUID)
        self.clock.advance(4)

        resp = self._call("get", "session", pk=10)

        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertEqual(resp.data["status"], "authorized")
        self.assertEqual(resp.data["progress"], 100)
        self.assertFalse(resp.data["is_processing"])

    def test_sesion_inexistente_404(self):
        resp = self._call("get", "session", pk=999)
        self.assertEqual(resp.status_code, status.HTTP_404_NOT_FOUND)

    def test_cancelar(self):
        self.transport.submit.return_value = _invoice()
        self._call("post", "invoices", {"order_id": 55})

        resp = self._call("post", "cancel", pk=10)

        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertFalse(resp.data["remote_aborted"])
        self.assertTrue(resp.data["reconciliation_scheduled"])

    def test_cancelar_y_reenviar_409(self):
        self.transport.submit.return_value = _invoice("processing")
        self._call("post", "invoices", {"order_id": 55})
        self._call("post", "cancel", pk=10)

        resp = self._call("post", "invoices", {"order_id": 55})

        self.assertEqual(resp.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(self.transport.submit.call_count, 1)

    def test_sesion_duplicada_no_ofrece_reintento(self):
        self.transport.submit.return_value = _invoice()
        self._call("post", "invoices", {"order_id": 55})
        self.transport.poll_status.return_value = _invoice("rejected", code="duplicate_document")
        self.clock.advance(2)

        resp = self._call("get", "session", pk=10)

        self.assertEqual(resp.data["status"], "rejected")
        self.assertFalse(resp.data["can_retry"])

    def test_reset_sesion_activa_409(self):
        self.transport.submit.return_value = _invoice()
        self._call("post", "invoices", {"order_id": 55})

        resp = self._call("post", "reset", pk=10)
        self.assertEqual(resp.status_code, status.HTTP_409_CONFLICT)

    def test_reset_sin_sesion_204(self):
        resp = self._call("post", "reset", pk=10)
        self.assertEqual(resp.status_code, status.HTTP_204_NO_CONTENT)

    # -------------------------
    # Reintento y recomendaciones
    # -------------------------

    def test_reintento(self):
        self.store.save(_invoice("error", attempts=1, code="server_error"))
        self.transport.resubmit.return_value = _invoice("processing", attempts=2)

        resp = self._call("post", "retry", pk=10)

        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertEqual(resp.data["invoice"]["fel"]["fel_attempts"], 2)
        self.assertEqual(resp.data["session"]["status"], "processing")

    def test_reintento_duplicado_400(self):
        self.store.save(_invoice("rejected", code="duplicate_document"))
        resp = self._call("post", "retry", pk=10)
        self.assertEqual(resp.status_code, status.HTTP_400_BAD_REQUEST)

    def test_reporte_de_error(self):
        self.store.save(_invoice("error", attempts=3, code="server_error"))

        resp = self._call("get", "report", pk=10)

        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertEqual(resp.data["friendly_message"], "Error en servidor SAT - Intente más tarde")
        self.assertEqual([a["type"] for a in resp.data["recommended_actions"]], ["receipt"])

    def test_recomendaciones(self):
        resp = self._call(
            "post",
            "recommendations",
            {
                "invoice_id": 10,
                "invoice_number": "FAC-0010",
                "fel_status": "error",
                "fel_error_code": "invalid_nit",
                "fel_attempts": 1,
                "fel_max_attempts": 3,
            },
        )

        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertEqual(
            [(a["type"], a["priority"]) for a in resp.data["recommended_actions"]],
            [("edit_client", "high"), ("retry", "medium"), ("receipt", "low")],
        )

    def test_recomendaciones_intentos_invalidos(self):
        resp = self._call(
            "post",
            "recommendations",
            {"invoice_id": 10, "fel_status": "error", "fel_attempts": 4, "fel_max_attempts": 3},
        )
        self.assertEqual(resp.status_code, status.HTTP_400_BAD_REQUEST)

    def test_documento_pdf(self):
        self.store.save(_invoice("authorized", uuid=UUID))
        self.transport.download_document.return_value = b"%PDF-1.4"

        resp = self._call("get", "document", pk=10)

        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertEqual(resp["Content-Type"], "application/pdf")
        self.assertEqual(resp.content, b"%PDF-1.4")


class EligibilityAPITests(SimpleTestCase):
    def setUp(self) -> None:
        self.factory = APIRequestFactory()
        self.view = FELViewSet.as_view({"get": "eligibility", "post": "eligibility"})

    def _post(self, data):
        request = self.factory.post("/api/billing/fel/eligibility/", data, format="json")
        force_authenticate(request, user=_user())
        return self.view(request)

    def _order(self, nit="12345678", **extra):
        data = {
            "id": 55,
            "status": "delivered",
            "client": {"id": 3, "name": "Cliente", "nit": nit, "address": "Zona 1"},
        }
        data.update(extra)
        return data

    def test_ambos_tipos_requiere_eleccion(self):
        resp = self._post(self._order())

        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertEqual(resp.data["available_types"], ["receipt", "invoice"])
        self.assertTrue(resp.data["requires_choice"])
        self.assertIsNone(resp.data["document_type"])

    def test_consumidor_final_comprobante_directo(self):
        resp = self._post(self._order(nit="C/F"))
        self.assertEqual(resp.data["document_type"], "receipt")
        self.assertEqual(resp.data["reason"], "Cliente no tiene NIT válido")

    def test_eleccion_no_elegible_400(self):
        resp = self._post(self._order(nit="C/F", document_type="invoice"))
        self.assertEqual(resp.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(resp.data["detail"], "Cliente no tiene NIT válido")

    def test_consulta_por_orden(self):
        service = MagicMock()
        service.get_order.return_value = {"id": 55, "status": "delivered", "client_id": 3}
        service.get_client.return_value = {"id": 3, "name": "Cliente", "nit": "C/F", "address": "Zona 1"}

        request = self.factory.get("/api/billing/fel/eligibility/", {"order_id": 55})
        force_authenticate(request, user=_user())
        with patch("billing.views.get_order_service", return_value=service):
            resp = self.view(request)

        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertEqual(resp.data["available_types"], ["receipt"])


class ReceiptAPITests(SimpleTestCase):
    """
    POST /api/billing/fel/receipts/:

    - Orden entregada -> 201 con el PDF del comprobante.
    - Orden que no admite comprobante -> 400 sin llamar al API.
    - Envío FEL en curso para la orden -> 409.
    """

    def setUp(self) -> None:
        cache.clear()
        self.addCleanup(cache.clear)
        self.factory = APIRequestFactory()
        self.view = FELViewSet.as_view({"post": "receipts"})
        self.transport = MagicMock()
        self.coordinator = FELProcessingCoordinator(
            self.transport, MemoryStore(), clock=FakeClock(), reconciler=MagicMock()
        )
        self.service = MagicMock()
        self.service.get_client.return_value = {"id": 3, "name": "Cliente", "nit": "C/F", "address": "Zona 1"}

        for target, value in (
            ("billing.views.get_coordinator", self.coordinator),
            ("billing.views.get_order_service", self.service),
        ):
            patcher = patch(target, return_value=value)
            patcher.start()
            self.addCleanup(patcher.stop)

    def _post(self, data):
        request = self.factory.post("/api/billing/fel/receipts/", data, format="json")
        force_authenticate(request, user=_user())
        return self.view(request)

    def test_comprobante_pdf(self):
        self.service.get_order.return_value = {"id": 55, "status": "delivered", "client_id": 3}
        self.transport.create_receipt.return_value = b"%PDF-1.4"

        resp = self._post({"order_id": 55, "notes": "Entrega en bodega"})

        self.assertEqual(resp.status_code, status.HTTP_201_CREATED)
        self.assertEqual(resp["Content-Type"], "application/pdf")
        self.assertEqual(resp.content, b"%PDF-1.4")
        sent = self.transport.create_receipt.call_args.args[0]
        self.assertEqual(sent["order_id"], 55)
        self.assertEqual(sent["notes"], "Entrega en bodega")

    def test_orden_no_entregada_400(self):
        self.service.get_order.return_value = {"id": 55, "status": "pending", "client_id": 3}

        resp = self._post({"order_id": 55})

        self.assertEqual(resp.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(resp.data["detail"], "La orden debe estar entregada")
        self.transport.create_receipt.assert_not_called()

    def test_envio_fel_en_curso_409(self):
        self.service.get_order.return_value = {"id": 55, "status": "delivered", "client_id": 3}
        self.transport.submit.return_value = _invoice()
        self.coordinator.create_fel_invoice({"order_id": 55})

        resp = self._post({"order_id": 55})

        self.assertEqual(resp.status_code, status.HTTP_409_CONFLICT)
        self.transport.create_receipt.assert_not_called()
