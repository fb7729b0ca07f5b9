"""
mentorguard — Anti-Gaming Governance for AI-Assisted Coding Education
======================================================================
Decides per request whether a learner's AI-assistant consultation is
allowed, throttled, or flagged, and detects when a learner is working
around the learning goals: rapid-fire prompting, verbatim copy-pasting of
generated code, escalating risk patterns.

Package layout::

    mentorguard/
    ├── config.py             # YAML → typed Python config
    ├── database/
    │   ├── engine.py         # SQLAlchemy engine + async helper
    │   └── models.py         # Canonical records, history, audit tables
    ├── engine/
    │   ├── errors.py         # Error taxonomy
    │   ├── store.py          # Counter store (Redis / in-memory)
    │   ├── rate_limiter.py   # Minute/hour/day quotas + burst window
    │   ├── vocabulary.py     # Keyword/topic/pattern extraction strategy
    │   ├── context_cache.py  # Cache-aside challenge context
    │   ├── copy_paste.py     # Copy/paste correlation + provenance
    │   └── temporal.py       # Temporal behavior analysis
    ├── services/
    │   ├── history.py        # Validation-outcome history reads/writes
    │   └── governance_service.py  # Per-request decision + audit record
    └── api/
        ├── main.py           # FastAPI app
        ├── deps.py           # Dependency wiring
        └── routes/
            └── governance.py # Governance REST endpoints
"""

__version__ = "0.1.0"
