# billing/services/fel/records.py
# -*- coding: utf-8 -*-
"""
Registros FEL (Facturación Electrónica en Línea - SAT Guatemala).

- FELInfo / FiscalInvoice: lo que el certificador / SAT ha decidido (persistido
  por servicios externos).
- ProcessingSession: estado efímero de un envío en curso (progreso, timers).
  Se guarda en el registro compartido de sesiones (cache) para que cualquier
  worker web la vea.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields, replace
from decimal import Decimal, InvalidOperation
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from django.conf import settings
from django.db import models


class FELStatus(models.TextChoices):
    PENDING = "pending", "Pendiente"
    PROCESSING = "processing", "Procesando con SAT"
    AUTHORIZED = "authorized", "Autorizada"
    REJECTED = "rejected", "Rechazada por SAT"
    ERROR = "error", "Error técnico"
    TIMEOUT = "timeout", "Tiempo agotado"


class DocumentType(models.TextChoices):
    INVOICE = "invoice", "Factura FEL"
    RECEIPT = "receipt", "Comprobante"


ACTIVE_STATUSES = frozenset({FELStatus.PENDING, FELStatus.PROCESSING})
RETRYABLE_STATUSES = frozenset({FELStatus.ERROR, FELStatus.REJECTED, FELStatus.TIMEOUT})

DEFAULT_MAX_ATTEMPTS = 3

FEL_ERROR_MESSAGES: Mapping[str, str] = MappingProxyType(
    {
        "connection_timeout": "Sin conexión con SAT - Intente nuevamente",
        "invalid_nit": "NIT del cliente es inválido",
        "client_incomplete": "Datos del cliente incompletos para FEL",
        "invalid_amount": "Monto de factura inválido",
        "server_error": "Error en servidor SAT - Intente más tarde",
        "duplicate_document": "Documento duplicado en SAT",
        "invalid_date": "Fecha de factura inválida",
        "tax_calculation_error": "Error en cálculo de impuestos",
        "client_not_found": "Cliente no encontrado en registros SAT",
        "unknown_error": "Error desconocido - Contacte soporte",
    }
)

# Estados que reporta el API del certificador -> FELStatus
_REMOTE_STATUS_MAP: Mapping[str, str] = MappingProxyType(
    {
        "fel_pending": FELStatus.PENDING,
        "fel_processing": FELStatus.PROCESSING,
        "fel_authorized": FELStatus.AUTHORIZED,
        "issued": FELStatus.AUTHORIZED,
        "fel_rejected": FELStatus.REJECTED,
        "fel_error": FELStatus.ERROR,
        "fel_timeout": FELStatus.TIMEOUT,
    }
)


def map_remote_status(value: Optional[str]) -> str:
    """Normaliza el estado remoto. Desconocido -> pending (se sigue consultando)."""
    raw = str(value or "").strip().lower()
    if raw in FELStatus.values:
        return raw
    return _REMOTE_STATUS_MAP.get(raw, FELStatus.PENDING)


def _to_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def _default_max_attempts() -> int:
    return int(getattr(settings, "FEL_DEFAULT_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS))


def format_fel_uuid(uuid: Optional[str]) -> str:
    """Primeros 8 y últimos 4 caracteres del UUID SAT."""
    if not uuid:
        return "N/A"
    if len(uuid) > 12:
        return f"{uuid[:8]}...{uuid[-4:]}"
    return uuid


def format_seconds(seconds: int) -> str:
    mins, secs = divmod(max(int(seconds), 0), 60)
    return f"{mins}m {secs}s" if mins > 0 else f"{secs}s"


def format_time_left(seconds: Optional[int]) -> str:
    if seconds is None or seconds <= 0:
        return "--"
    return format_seconds(seconds)


@dataclass(frozen=True)
class FELInfo:
    """
    Sub-registro FEL de una factura.

    Invariantes:
    - 0 <= fel_attempts <= fel_max_attempts
    - fel_uuid no vacío  <=>  fel_status == authorized
    """

    fel_status: str = FELStatus.PENDING
    requires_fel: bool = True
    fel_uuid: Optional[str] = None
    fel_error_code: Optional[str] = None
    fel_error_message: Optional[str] = None
    fel_attempts: int = 0
    fel_max_attempts: int = DEFAULT_MAX_ATTEMPTS
    fel_authorized_at: Optional[str] = None
    fel_series: Optional[str] = None
    fel_document_number: Optional[str] = None
    certifier: Optional[str] = None

    def __post_init__(self) -> None:
        if self.fel_attempts < 0 or self.fel_max_attempts < 0:
            raise ValueError("Los intentos FEL no pueden ser negativos.")
        if self.fel_attempts > self.fel_max_attempts:
            raise ValueError(
                f"fel_attempts ({self.fel_attempts}) excede fel_max_attempts ({self.fel_max_attempts})."
            )
        authorized = self.fel_status == FELStatus.AUTHORIZED
        if authorized != bool(self.fel_uuid):
            raise ValueError(
                "fel_uuid debe existir si y sólo si la factura está autorizada "
                f"(estado={self.fel_status}, uuid={self.fel_uuid!r})."
            )

    @property
    def attempts_left(self) -> int:
        return max(self.fel_max_attempts - self.fel_attempts, 0)

    @property
    def has_attempts_left(self) -> bool:
        return self.fel_attempts < self.fel_max_attempts

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "FELInfo":
        status = map_remote_status(data.get("fel_status") or data.get("status"))
        max_attempts = data.get("fel_max_attempts")
        return cls(
            fel_status=status,
            requires_fel=bool(data.get("requires_fel", True)),
            fel_uuid=data.get("fel_uuid") or None,
            fel_error_code=data.get("fel_error_code") or None,
            fel_error_message=data.get("fel_error_message") or None,
            fel_attempts=int(data.get("fel_attempts") or 0),
            fel_max_attempts=int(max_attempts) if max_attempts is not None else _default_max_attempts(),
            fel_authorized_at=data.get("fel_authorized_at") or data.get("fel_authorization_date"),
            fel_series=data.get("fel_series"),
            fel_document_number=data.get("fel_document_number") or data.get("fel_number"),
            certifier=data.get("certifier") or data.get("fel_certifier"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fel_status": str(self.fel_status),
            "requires_fel": self.requires_fel,
            "fel_uuid": self.fel_uuid,
            "fel_uuid_display": format_fel_uuid(self.fel_uuid),
            "fel_error_code": self.fel_error_code,
            "fel_error_message": self.fel_error_message,
            "fel_attempts": self.fel_attempts,
            "fel_max_attempts": self.fel_max_attempts,
            "fel_authorized_at": self.fel_authorized_at,
            "fel_series": self.fel_series,
            "fel_document_number": self.fel_document_number,
            "certifier": self.certifier,
        }


@dataclass(frozen=True)
class FiscalInvoice:
    """Factura (o comprobante si requires_fel=False) con su información FEL."""

    id: int
    invoice_number: str
    fel: FELInfo = field(default_factory=FELInfo)
    order_id: Optional[int] = None
    total_amount: Decimal = Decimal("0")
    client_name: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_fiscal(self) -> bool:
        return self.fel.requires_fel

    def with_fel(self, **changes: Any) -> "FiscalInvoice":
        return replace(self, fel=replace(self.fel, **changes))

    def keeping_attempts_of(self, previous: Optional["FiscalInvoice"]) -> "FiscalInvoice":
        """
        El certificador no siempre devuelve el conteo de intentos: el conteo
        conocido nunca baja (acotado a fel_max_attempts).
        """
        if previous is None:
            return self
        attempts = min(
            max(self.fel.fel_attempts, previous.fel.fel_attempts),
            self.fel.fel_max_attempts,
        )
        if attempts == self.fel.fel_attempts:
            return self
        return self.with_fel(fel_attempts=attempts)

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "FiscalInvoice":
        """
        Construye la factura desde la respuesta del certificador.

        Acepta el sub-registro anidado en "fel" o los campos fel_* planos.
        """
        fel_data = data.get("fel")
        if not isinstance(fel_data, Mapping):
            fel_data = data
        client = data.get("client") or {}
        return cls(
            id=int(data.get("id") or data.get("invoice_id")),
            invoice_number=str(data.get("invoice_number") or ""),
            fel=FELInfo.from_payload(fel_data),
            order_id=data.get("order_id"),
            total_amount=_to_decimal(data.get("total_amount")),
            client_name=data.get("client_name") or client.get("name"),
            updated_at=data.get("updated_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "order_id": self.order_id,
            "total_amount": str(self.total_amount),
            "client_name": self.client_name,
            "updated_at": self.updated_at,
            "fel": self.fel.to_dict(),
        }


@dataclass
class ProcessingSession:
    """
    Estado efímero de un envío FEL. Sólo lo modifica el coordinador.

    `progress` es una estimación local (tiempo transcurrido / tiempo máximo),
    no un avance real del lado de SAT. `retryable` lo calcula el coordinador
    con las mismas reglas que retry_fel (estado, intentos y código de error).
    """

    started_at: float
    timeout_seconds: int
    order_id: Optional[int] = None
    invoice_id: Optional[int] = None
    status: str = FELStatus.PENDING
    progress: int = 0
    time_elapsed: int = 0
    estimated_time_left: Optional[int] = None
    last_error: Optional[str] = None
    cancelled: bool = False
    last_poll_at: Optional[float] = None
    poll_failures: int = 0
    retryable: bool = False

    @property
    def is_active(self) -> bool:
        return not self.cancelled and self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status not in ACTIVE_STATUSES

    def to_state(self) -> Dict[str, Any]:
        """Representación plana para el registro compartido (cache)."""
        state = asdict(self)
        state["status"] = str(self.status)
        return state

    @classmethod
    def from_state(cls, state: Mapping[str, Any]) -> "ProcessingSession":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in state.items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "invoice_id": self.invoice_id,
            "order_id": self.order_id,
            "status": str(self.status),
            "is_processing": self.is_active,
            "progress": self.progress,
            "time_elapsed": self.time_elapsed,
            "time_elapsed_display": format_seconds(self.time_elapsed),
            "estimated_time_left": self.estimated_time_left,
            "estimated_time_left_display": format_time_left(self.estimated_time_left),
            "last_error": self.last_error,
            "cancelled": self.cancelled,
            "can_retry": self.retryable,
        }
