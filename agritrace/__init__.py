"""
AgriTrace: farm-to-market traceability infrastructure
=====================================================

The ``agritrace`` package hosts the Traceability Ledger SDK
(:mod:`agritrace.traceability_ledger`) and the shared exception hierarchy
(:mod:`agritrace.exceptions`).
"""

from ._version import __version__

__author__ = "AgriTrace Team"
__license__ = "MIT"

__all__ = ["__version__"]
