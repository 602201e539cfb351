# -*- coding: utf-8 -*-
"""
Traceability Ledger REST API

FastAPI router and request dependencies for the Traceability Ledger
Service, mounted under ``/api/v1/traceability``.
"""

from agritrace.traceability_ledger.api.router import router

__all__ = ["router"]
