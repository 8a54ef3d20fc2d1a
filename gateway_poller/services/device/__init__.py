"""
Device Layer - Modbus Communication

Responsibilities:
- Decode/encode register words (register_codec)
- Connect with retries and read FC3/FC4 registers (modbus_client)
- Share one connection per endpoint during a poll (connection_pool)
"""

from .connection_pool import ConnectionPool
from .modbus_client import ConnectionTest, ModbusClient

__all__ = ["ConnectionPool", "ConnectionTest", "ModbusClient"]
