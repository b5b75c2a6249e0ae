"""Run events and their sinks (logs, Prometheus)."""
