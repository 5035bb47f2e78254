"""
Regulatory Truth Routes
=======================

API route handlers for the Regulatory Truth Service.

Routes:
- rules: evaluation and human review
- conflicts: listing and human arbitration
- releases: release history and verification
- endpoints: discovery endpoint health
- pipeline: operator pass and integrity audit
"""

from services.regulatory_truth.routes import conflicts, endpoints, pipeline, releases, rules


__all__ = ["conflicts", "endpoints", "pipeline", "releases", "rules"]
