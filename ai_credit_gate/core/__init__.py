"""
Core modules for AI Credit Gate.

This package contains the credit ledger, pricing, request orchestration
and streamed chat delivery.
"""
