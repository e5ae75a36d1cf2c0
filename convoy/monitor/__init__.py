"""Rollout monitor: read-only projection over the Deployment Ledger.

The monitor never keeps its own state.  Every call re-reads the ledger.

Modules
-------
projection
    ``RolloutProjection`` reads the ledger and produces ``RolloutSnapshot``
    Pydantic models, a frozen point-in-time view of a rollout.
renderer
    ``RolloutRenderer`` turns ``RolloutSnapshot`` into Rich renderables
    for terminal display, including continuous ``Rich.Live`` mode.
"""
