"""
Regulatory Truth Test Suite
===========================

Test organization:
- tests/unit/                        - Shared infrastructure (config, logging, LLM, retry, DB clients)
- tests/services/regulatory_truth/   - Pipeline stages, store, audit and HTTP routes

Every test runs against the in-memory store and queue; PostgreSQL and Redis
are mocked at the session and client level.

Run tests:
    pytest                                   # All tests
    pytest tests/unit                        # Infrastructure only
    pytest tests/services/regulatory_truth   # Pipeline only
"""
