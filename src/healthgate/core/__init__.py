"""
Core request gate components.

This package contains the defense and compliance stages:
- API key authentication and key storage
- Threat detection
- Fixed-window rate limiting
- Compliance annotation
- Audit records and log sanitization
- Metrics collection
"""
