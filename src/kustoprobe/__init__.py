"""
kustoprobe: telemetry round-trip smoke test for an Azure Data Explorer (Kusto) cluster.

This package provides:
- Credential acquisition (device-code bearer token or ambient credential chain)
- Queued ingestion of one synthetic telemetry row with terminal-status tracking
- Streaming read-back of the newest rows to confirm the write
"""

__version__ = "0.1.0"
