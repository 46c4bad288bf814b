"""
HealthGate - Request defense and compliance gate for health-data APIs

A FastAPI-based middleware chain that authenticates callers by API key,
rejects injection and traversal attempts, rate limits per route tier,
annotates responses for health-data compliance and writes anonymized
audit records.
"""

__version__ = "0.1.0"

from .main import app

__all__ = ["app"]
