# billing/services/__init__.py
"""
Servicios de dominio para el módulo de facturación:

- FEL: elegibilidad de documentos, envío al certificador, seguimiento del
  estado SAT y recuperación de errores.

Los submódulos específicos viven en:
- billing/services/fel/
"""
