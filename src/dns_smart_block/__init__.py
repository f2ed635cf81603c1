"""
DNS Smart Block: LLM-backed domain classification for DNS blocklists.

This package contains:

- configuration loading (environment variables)
- the append-only classification event log and its projections
- the domain classifier (bounded fetch + prompt rendering + LLM call)
- the queue-driven classification orchestrator
- the read-only blocklist server
"""
