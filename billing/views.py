# billing/views.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import logging

from django.http import HttpResponse

from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from billing.permissions import CanIssueFEL
from billing.serializers import (
    FELInvoiceRequestSerializer,
    OrderEligibilitySerializer,
    OrderIdQuerySerializer,
    ReceiptRequestSerializer,
    RecommendationRequestSerializer,
)
from billing.services.fel import get_coordinator, get_order_service
from billing.services.fel.eligibility import (
    OrderSnapshot,
    check_order_eligibility,
    describe_eligibility,
    load_order_snapshot,
    resolve_document_choice,
)
from billing.services.fel.exceptions import (
    DocumentChoiceRequired,
    DocumentNotEligible,
    FELError,
    FELInvoiceNotFound,
    FELRetryNotAllowedError,
    FELSessionActiveError,
    FELSessionNotFound,
    FELSubmissionError,
    FELTransportError,
)
from billing.services.fel.records import DocumentType, FELInfo, FiscalInvoice
from billing.services.fel.recovery import build_error_report

logger = logging.getLogger(__name__)


def _fel_error_response(exc: FELError) -> Response:
    """Traduce los errores FEL a respuestas HTTP planas {"detail": ...}."""
    if isinstance(exc, (FELSessionNotFound, FELInvoiceNotFound)) or getattr(exc, "status_code", None) == 404:
        http_status = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, FELSessionActiveError):
        http_status = status.HTTP_409_CONFLICT
    elif isinstance(exc, (FELSubmissionError, FELTransportError)):
        http_status = status.HTTP_502_BAD_GATEWAY
    else:
        http_status = status.HTTP_400_BAD_REQUEST

    data = {"detail": str(exc)}
    code = getattr(exc, "code", None)
    if code:
        data["code"] = code
    return Response(data, status=http_status)


class FELViewSet(viewsets.ViewSet):
    """
    Endpoints FEL para la consola web:

    - eligibility: qué documentos puede emitir una orden.
    - invoices: envía la orden al certificador y abre la sesión.
    - receipts: comprobante sin valor fiscal (PDF), si la orden lo admite.
    - {id}/session: un paso de seguimiento (timers + consulta) y snapshot.
    - {id}/retry, {id}/cancel, {id}/reset: control de la sesión.
    - {id}/report, recommendations: mensaje amigable y acciones recomendadas.
    - {id}/document: PDF de la factura autorizada.
    """

    permission_classes = [IsAuthenticated, CanIssueFEL]
    lookup_value_regex = r"\d+"

    @staticmethod
    def _validated(serializer_class, data):
        serializer = serializer_class(data=data)
        serializer.is_valid(raise_exception=True)
        return serializer.validated_data

    # -------------------------
    # Elegibilidad
    # -------------------------

    @action(detail=False, methods=["get", "post"], url_path="eligibility")
    def eligibility(self, request):
        if request.method == "GET":
            params = self._validated(OrderIdQuerySerializer, request.query_params)
            try:
                return Response(check_order_eligibility(params["order_id"], get_order_service()))
            except FELError as exc:
                return _fel_error_response(exc)

        params = self._validated(OrderEligibilitySerializer, request.data)
        chosen = params.pop("document_type")
        order = OrderSnapshot.from_dict(params)
        data = describe_eligibility(order)

        try:
            data["document_type"] = resolve_document_choice(order, chosen)
        except DocumentChoiceRequired as exc:
            data["document_type"] = None
            data["detail"] = str(exc)
        except DocumentNotEligible as exc:
            data["document_type"] = None
            data["detail"] = str(exc)
            if chosen is not None:
                return Response(data, status=status.HTTP_400_BAD_REQUEST)
        return Response(data)

    # -------------------------
    # Ciclo de vida del envío
    # -------------------------

    @action(detail=False, methods=["post"], url_path="invoices")
    def invoices(self, request):
        params = self._validated(FELInvoiceRequestSerializer, request.data)
        coordinator = get_coordinator()
        try:
            invoice = coordinator.create_fel_invoice(params)
        except FELError as exc:
            logger.warning("No se pudo crear factura FEL para orden %s: %s", params["order_id"], exc)
            return _fel_error_response(exc)

        session = coordinator.get_session(invoice.id)
        return Response(
            {
                "invoice": invoice.to_dict(),
                "session": session.to_dict() if session else None,
            },
            status=status.HTTP_201_CREATED,
        )

    @action(detail=False, methods=["post"], url_path="receipts")
    def receipts(self, request):
        """Comprobante sin valor fiscal: sólo si la orden lo admite."""
        params = self._validated(ReceiptRequestSerializer, request.data)
        try:
            order = load_order_snapshot(params["order_id"], get_order_service())
            resolve_document_choice(order, DocumentType.RECEIPT.value)
            content = get_coordinator().create_receipt(params)
        except FELError as exc:
            logger.warning("No se pudo generar comprobante para orden %s: %s", params["order_id"], exc)
            return _fel_error_response(exc)

        response = HttpResponse(content, content_type="application/pdf", status=status.HTTP_201_CREATED)
        response["Content-Disposition"] = f'attachment; filename="comprobante_orden_{params["order_id"]}.pdf"'
        return response

    @action(detail=True, methods=["get"], url_path="session")
    def session(self, request, pk=None):
        try:
            snapshot = get_coordinator().tick(int(pk))
        except FELError as exc:
            return _fel_error_response(exc)
        return Response(snapshot.to_dict())

    @action(detail=True, methods=["post"], url_path="retry")
    def retry(self, request, pk=None):
        coordinator = get_coordinator()
        try:
            invoice = coordinator.retry_fel(int(pk))
        except FELRetryNotAllowedError as exc:
            logger.info("Reintento FEL rechazado para factura %s: %s", pk, exc)
            return _fel_error_response(exc)
        except FELError as exc:
            return _fel_error_response(exc)

        session = coordinator.get_session(invoice.id)
        return Response(
            {
                "invoice": invoice.to_dict(),
                "session": session.to_dict() if session else None,
            }
        )

    @action(detail=True, methods=["post"], url_path="cancel")
    def cancel(self, request, pk=None):
        try:
            result = get_coordinator().cancel_process(int(pk))
        except FELError as exc:
            return _fel_error_response(exc)
        return Response(result)

    @action(detail=True, methods=["post"], url_path="reset")
    def reset(self, request, pk=None):
        try:
            get_coordinator().reset(int(pk))
        except FELError as exc:
            return _fel_error_response(exc)
        return Response(status=status.HTTP_204_NO_CONTENT)

    # -------------------------
    # Errores y documentos
    # -------------------------

    @action(detail=True, methods=["get"], url_path="report")
    def report(self, request, pk=None):
        try:
            return Response(get_coordinator().describe_failure(int(pk)))
        except FELError as exc:
            return _fel_error_response(exc)

    @action(detail=False, methods=["post"], url_path="recommendations")
    def recommendations(self, request):
        params = self._validated(RecommendationRequestSerializer, request.data)
        invoice = FiscalInvoice(
            id=params["invoice_id"],
            invoice_number=params["invoice_number"],
            fel=FELInfo(
                fel_status=params["fel_status"],
                fel_error_code=params["fel_error_code"] or None,
                fel_error_message=params["fel_error_message"] or None,
                fel_attempts=params["fel_attempts"],
                fel_max_attempts=params["fel_max_attempts"],
            ),
        )
        return Response(build_error_report(invoice))

    @action(detail=True, methods=["get"], url_path="document")
    def document(self, request, pk=None):
        try:
            content = get_coordinator().download_document(int(pk))
        except FELError as exc:
            return _fel_error_response(exc)

        response = HttpResponse(content, content_type="application/pdf")
        response["Content-Disposition"] = f'inline; filename="factura_fel_{pk}.pdf"'
        return response
