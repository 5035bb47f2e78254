"""
Regulatory Truth Service
========================

Turns regulatory publications into versioned, evidence-backed rules.
Every published value traces to an exact quote in immutable evidence,
and high-risk rules reach a release only through a human approver.

Stages:
- Sentinel: endpoint discovery and evidence capture
- Extractor: quoted facts from evidence
- Composer: draft rules from grouped facts
- Reviewer: automated checks and the approval gate
- Arbiter: conflict resolution by authority and recency
- Releaser: content-hashed, semantically versioned releases

Port: 8010
"""

__version__ = "0.1.0"
