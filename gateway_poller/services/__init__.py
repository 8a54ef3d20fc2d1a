"""
Poller services:
- device - Modbus TCP client, connection pool, register codec
- polling - Orchestrator, worker, error handling, long-running service
- scheduling - Reliable scheduling, audit/repair, circuit breaker
- config - Config file loading and validation
"""
