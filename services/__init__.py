"""
Regulatory Truth Services
=========================

Services:
- regulatory_truth: evidence-backed regulatory rule pipeline and API
"""

__all__ = [
    "regulatory_truth",
]
