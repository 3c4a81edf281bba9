"""LES audit: paycheck reconciliation engine for military pay statements."""

__version__ = "0.1.0"
