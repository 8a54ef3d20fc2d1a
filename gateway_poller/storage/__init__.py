"""
Local storage: SQLite entity store (gateways, data points, readings)
and the claim-once poll task queue.
"""
