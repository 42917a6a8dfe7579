# billing/permissions.py
from __future__ import annotations

from django.conf import settings

from rest_framework.permissions import BasePermission, SAFE_METHODS

from bodega.roles import resolve_user_role

DEFAULT_FEL_ISSUER_ROLES = ("operario", "supervisor", "gerente", "admin")


class CanIssueFEL(BasePermission):
    """
    Permiso para emitir / reintentar / cancelar envíos FEL.

    Regla:
    - Debe estar autenticado (lectura permitida a cualquier autenticado).
    - Para métodos de escritura, cumplir al menos una:
      - user.is_superuser
      - rol de workflow dentro de settings.FEL_ISSUER_ROLES
      - user.has_perm('billing.issue_fel')
    """

    message = "No tienes permisos para emitir facturas FEL."

    def has_permission(self, request, view) -> bool:
        user = request.user
        if not user or not user.is_authenticated:
            return False

        if request.method in SAFE_METHODS:
            return True

        if getattr(user, "is_superuser", False):
            return True

        allowed = getattr(settings, "FEL_ISSUER_ROLES", DEFAULT_FEL_ISSUER_ROLES)
        if resolve_user_role(user) in allowed:
            return True

        has_perm = getattr(user, "has_perm", None)
        return bool(has_perm and has_perm("billing.issue_fel"))
