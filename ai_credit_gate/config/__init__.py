"""
Configuration for AI Credit Gate.
"""

from .loader import GatewayConfig, load_gateway_config

__all__ = ["GatewayConfig", "load_gateway_config"]
