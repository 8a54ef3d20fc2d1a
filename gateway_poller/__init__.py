"""
Gateway Poller

Polls Modbus TCP gateways, decodes register words into scaled readings
and stores each reading exactly once per data point and interval.
"""

__version__ = "1.0.0"
