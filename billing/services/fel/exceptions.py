# billing/services/fel/exceptions.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from typing import Optional


class FELError(Exception):
    """Errores de orquestación FEL (sesiones, reintentos, elegibilidad)."""


class FELTransportError(FELError):
    """
    Fallo al comunicarse con el certificador FEL.

    `code` usa los mismos códigos de error FEL (connection_timeout,
    server_error, ...) para que la clasificación sea uniforme.
    """

    def __init__(self, message: str, code: str = "server_error", status_code: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class FELSubmissionError(FELError):
    """El envío (creación o reintento) no llegó a registrarse en el certificador."""

    def __init__(self, message: str, code: str = "server_error"):
        super().__init__(message)
        self.code = code


class FELSessionActiveError(FELError):
    """Ya existe una sesión de procesamiento activa para la factura u orden."""


class FELSessionNotFound(FELError):
    """No hay sesión de procesamiento para la factura."""


class FELInvoiceNotFound(FELError):
    """No se conoce el estado FEL de la factura."""


class FELRetryNotAllowedError(FELError):
    """El reintento no está permitido (estado, intentos agotados o duplicado)."""


class DocumentEligibilityError(FELError):
    """Errores al decidir el tipo de documento para una orden."""


class DocumentChoiceRequired(DocumentEligibilityError):
    """Hay más de un tipo de documento elegible; el operador debe elegir."""


class DocumentNotEligible(DocumentEligibilityError):
    """El tipo de documento elegido no está disponible para la orden."""
