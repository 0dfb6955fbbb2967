"""
Observability module for the Segment Diagram Engine.

Provides structured logging (JSON in production, coloured text locally)
and the aggregated request telemetry exposed by RequestExecutor.stats().
"""
