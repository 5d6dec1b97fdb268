"""
Grid trading engine and order lifecycle manager for Hyperliquid.
"""

__version__ = "0.1.0"
