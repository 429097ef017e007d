"""
Harbor Monitor host agent.

Samples OS counters on a fixed interval and posts them as timestamped batches
to a telemetry endpoint.
"""

__version__ = "1.0.0"
