"""
Asynchronous job engine.

This package provides:
- Status-guarded lifecycle transitions (submit, claim, progress, complete, fail, cancel)
- Structural parameter deduplication and a result cache over completed jobs
- Maintenance sweeps for retry, expiry, stuck detection and retention
- Owner-scoped change notifications
- A polling worker dispatching to registry-based handlers
"""
