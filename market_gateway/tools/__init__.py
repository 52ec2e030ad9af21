"""Tool RPC layer.

Components:
  - Key Pool Manager (per-key daily quota, round-robin rotation)
  - Tool Call Cache (per-tool TTL, stale read path)
  - Fallback Resolver (static single-hop substitutes)
  - Error classification and payload normalization
  - Fire-and-forget telemetry
  - RPC Client (JSON-RPC over HTTP)
"""
