"""
Apps package - FastAPI services for the trading platform.

This package contains:
- order_lifecycle: entry order execution, exit pair placement and OCO supervision
"""
