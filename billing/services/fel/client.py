# billing/services/fel/client.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Protocol

from django.conf import settings

import requests

from .exceptions import FELTransportError
from .records import FiscalInvoice

logger = logging.getLogger("billing.fel")


class FELTransport(Protocol):
    """Transporte hacia el certificador FEL (colaborador externo)."""

    def submit(self, request: Mapping[str, Any]) -> FiscalInvoice:
        ...

    def poll_status(self, invoice_id: int) -> FiscalInvoice:
        ...

    def resubmit(self, invoice_id: int) -> FiscalInvoice:
        ...

    def download_document(self, invoice_id: int) -> bytes:
        ...

    def create_receipt(self, request: Mapping[str, Any]) -> bytes:
        ...


class _ApiClient:
    """Sesión HTTP común contra el API del sistema (base URL + token en settings)."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or getattr(settings, "FEL_CERTIFIER_BASE_URL", "")).rstrip("/")
        self.timeout = timeout or getattr(settings, "FEL_REQUEST_TIMEOUT", 15)

        self.session = session or requests.Session()
        self.session.headers.update(
            {"User-Agent": "SmartOrdersFEL/1.0 (Python/requests)", "Accept": "application/json"}
        )
        token = token if token is not None else getattr(settings, "FEL_CERTIFIER_TOKEN", "")
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    # -------------------------
    # HTTP
    # -------------------------

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except (requests.Timeout, requests.ConnectionError) as exc:
            logger.warning("Sin conexión con el certificador FEL (%s %s): %s", method, url, exc)
            raise FELTransportError(
                "Sin conexión con el certificador FEL.",
                code="connection_timeout",
            ) from exc
        except requests.RequestException as exc:
            logger.exception("Error HTTP inesperado con el certificador FEL (%s %s)", method, url)
            raise FELTransportError(str(exc), code="server_error") from exc

        if resp.status_code >= 500:
            logger.error(
                "Certificador FEL respondió status=%s (%s %s)",
                resp.status_code,
                method,
                url,
            )
            raise FELTransportError(
                f"Error en servidor del certificador (HTTP {resp.status_code}).",
                code="server_error",
                status_code=resp.status_code,
            )

        if resp.status_code >= 400:
            body = self._json_or_empty(resp)
            code = body.get("error_code") or body.get("code") or "unknown_error"
            detail = body.get("detail") or body.get("message") or resp.text
            logger.warning(
                "Certificador FEL rechazó la solicitud status=%s code=%s (%s %s)",
                resp.status_code,
                code,
                method,
                url,
            )
            raise FELTransportError(str(detail), code=str(code), status_code=resp.status_code)

        return resp

    @staticmethod
    def _json_or_empty(resp: requests.Response) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def _get_json(self, path: str) -> Dict[str, Any]:
        resp = self._request("GET", path)
        data = self._json_or_empty(resp)
        if not data:
            raise FELTransportError(
                f"Respuesta vacía o inválida en {path}.",
                code="server_error",
                status_code=resp.status_code,
            )
        return data


class OrderServiceClient(_ApiClient):
    """Servicio de órdenes / clientes usado para decidir la elegibilidad de documentos."""

    def get_order(self, order_id: int) -> Dict[str, Any]:
        return self._get_json(f"/orders/{order_id}")

    def get_client(self, client_id: int) -> Dict[str, Any]:
        return self._get_json(f"/clients/{client_id}")


class CertifierClient(_ApiClient):
    """
    Cliente REST del API de facturación que certifica documentos FEL ante SAT:

    - submit: POST /invoices/orders/{order_id}/auto-invoice-with-fel
    - poll_status: GET /invoices/{invoice_id}
    - resubmit: POST /invoices/{invoice_id}/fel/retry
    - download_document: GET /invoices/{invoice_id}/pdf (bytes)
    - create_receipt: POST /invoices/orders/{order_id}/receipt-only (PDF del
      comprobante sin valor fiscal)

    No reintenta a nivel HTTP: los reintentos FEL los decide el coordinador.
    """

    def __init__(self, *args, certifier: Optional[str] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.certifier = certifier or getattr(settings, "FEL_CERTIFIER", "digifact")

    def _invoice_from(self, resp: requests.Response) -> FiscalInvoice:
        try:
            return FiscalInvoice.from_payload(resp.json())
        except (ValueError, TypeError, KeyError) as exc:
            logger.error("Respuesta FEL inválida del certificador: %s", exc)
            raise FELTransportError(
                f"Respuesta inválida del certificador: {exc}",
                code="server_error",
                status_code=resp.status_code,
            ) from exc

    # -------------------------
    # Operaciones
    # -------------------------

    def submit(self, request: Mapping[str, Any]) -> FiscalInvoice:
        order_id = request["order_id"]
        payload = {
            "requires_fel": True,
            "payment_method": request.get("payment_method"),
            "due_date": request.get("due_date"),
            "notes": request.get("notes"),
            "payment_terms": request.get("payment_terms") or "Pago contra entrega",
        }
        logger.info("Enviando factura FEL para orden %s (certificador=%s)", order_id, self.certifier)
        resp = self._request(
            "POST",
            f"/invoices/orders/{order_id}/auto-invoice-with-fel",
            json=payload,
            params={"certifier": self.certifier},
        )
        return self._invoice_from(resp)

    def poll_status(self, invoice_id: int) -> FiscalInvoice:
        resp = self._request("GET", f"/invoices/{invoice_id}")
        return self._invoice_from(resp)

    def resubmit(self, invoice_id: int) -> FiscalInvoice:
        logger.info("Reenviando factura FEL %s (certificador=%s)", invoice_id, self.certifier)
        resp = self._request(
            "POST",
            f"/invoices/{invoice_id}/fel/retry",
            params={"certifier": self.certifier},
        )
        return self._invoice_from(resp)

    def download_document(self, invoice_id: int) -> bytes:
        resp = self._request("GET", f"/invoices/{invoice_id}/pdf")
        return resp.content

    def create_receipt(self, request: Mapping[str, Any]) -> bytes:
        order_id = request["order_id"]
        payload = {
            "notes": request.get("notes"),
            "payment_terms": request.get("payment_terms") or "Comprobante sin valor fiscal",
        }
        logger.info("Generando comprobante sin valor fiscal para orden %s", order_id)
        resp = self._request("POST", f"/invoices/orders/{order_id}/receipt-only", json=payload)
        return resp.content
