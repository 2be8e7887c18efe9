"""Parametric rainfall oracle: monitors insurance policies and reports triggers to the ledger."""

__version__ = "0.1.0"
