"""pingmetrics - synthetic latency telemetry and a tunable ping probe.

Serves Prometheus/OpenMetrics data on /metrics, a probe on /ping, and keeps
three background samplers feeding the registry so scrapes always see traffic.
"""

__version__ = "0.1.0"
