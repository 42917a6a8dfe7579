# billing/serializers.py
from __future__ import annotations

from typing import Any, Dict

from rest_framework import serializers

from billing.services.fel.records import DocumentType, FELStatus, RETRYABLE_STATUSES


# =========================
# Elegibilidad de documentos
# =========================


class ClientSnapshotSerializer(serializers.Serializer):
    id = serializers.IntegerField(required=False, allow_null=True)
    name = serializers.CharField(required=False, allow_blank=True, default="")
    nit = serializers.CharField(required=False, allow_blank=True, allow_null=True, default=None)
    address = serializers.CharField(required=False, allow_blank=True, default="")
    email = serializers.CharField(required=False, allow_blank=True, default="")
    phone = serializers.CharField(required=False, allow_blank=True, default="")


class OrderEligibilitySerializer(serializers.Serializer):
    """Orden + cliente tal como los entrega el servicio de órdenes."""

    id = serializers.IntegerField(min_value=1)
    status = serializers.CharField(max_length=30)
    order_number = serializers.CharField(required=False, allow_blank=True, default="")
    total_amount = serializers.DecimalField(
        max_digits=14, decimal_places=2, required=False, default=0
    )
    has_document = serializers.BooleanField(required=False, default=False)
    client = ClientSnapshotSerializer()
    document_type = serializers.ChoiceField(
        choices=DocumentType.choices, required=False, allow_null=True, default=None
    )


class OrderIdQuerySerializer(serializers.Serializer):
    order_id = serializers.IntegerField(min_value=1)


# =========================
# Envío FEL
# =========================


class FELInvoiceRequestSerializer(serializers.Serializer):
    order_id = serializers.IntegerField(min_value=1)
    payment_method = serializers.CharField(max_length=50, required=False, allow_blank=True, default="cash")
    due_date = serializers.DateField(required=False, allow_null=True, default=None)
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    payment_terms = serializers.CharField(max_length=120, required=False, allow_blank=True, default="")

    def to_internal_value(self, data) -> Dict[str, Any]:
        value = super().to_internal_value(data)
        if value.get("due_date") is not None:
            value["due_date"] = value["due_date"].isoformat()
        return value


class ReceiptRequestSerializer(serializers.Serializer):
    """Comprobante sin valor fiscal de una orden entregada."""

    order_id = serializers.IntegerField(min_value=1)
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    payment_terms = serializers.CharField(max_length=120, required=False, allow_blank=True, default="")


class RecommendationRequestSerializer(serializers.Serializer):
    """Estado FEL de una factura para calcular las acciones de recuperación."""

    invoice_id = serializers.IntegerField(min_value=1)
    invoice_number = serializers.CharField(max_length=50, required=False, allow_blank=True, default="")
    fel_status = serializers.ChoiceField(choices=FELStatus.choices)
    fel_error_code = serializers.CharField(required=False, allow_blank=True, allow_null=True, default=None)
    fel_error_message = serializers.CharField(required=False, allow_blank=True, allow_null=True, default=None)
    fel_attempts = serializers.IntegerField(min_value=0)
    fel_max_attempts = serializers.IntegerField(min_value=0)

    def validate(self, attrs):
        if attrs["fel_attempts"] > attrs["fel_max_attempts"]:
            raise serializers.ValidationError(
                {"fel_attempts": "No puede exceder fel_max_attempts."}
            )
        if attrs["fel_status"] not in RETRYABLE_STATUSES:
            raise serializers.ValidationError(
                {"fel_status": "Sólo aplica a facturas en error, rechazadas o con tiempo agotado."}
            )
        return attrs
