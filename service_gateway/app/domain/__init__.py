"""
Domain utilities for the Gateway Service.

Includes cross-cutting middleware and request processing helpers that do
not belong to adapters or transport-specific layers.
"""

from .admission import AdmissionGate, AdmissionMiddleware, AdmissionResult, build_policies

__all__ = [
    "AdmissionGate",
    "AdmissionMiddleware",
    "AdmissionResult",
    "build_policies",
]
