"""
AI Credit Gate.

Metered access to a generative AI provider backed by a prepaid credit ledger.
"""

__version__ = "0.1.0"
