"""APM metrics fusion engine.

Joins structural service topology from OpenSearch PPL with time-series
metrics from Prometheus into per-operation and per-dependency tables.
"""

__version__ = "0.1.0"
