"""
Barrel Volume Analyst.

Digitizes scanned oak-barrel volume tables with an AI vision service, merges
confirmed rows into a persistent dataset and answers volume lookups for a
given wet height.

- domain: cell/row models, merge engine, interpolation engine
- orchestrator: extraction client, analysis pipeline, store, export, API
- cli: unified command line entry point
"""

__all__ = [
    "config",
    "logging",
    "paths",
]
