"""
Meter Collector

Polls Modbus meters and inverters over RTU or TCP, decodes their registers
and republishes the latest readings over HTTP.
"""

__version__ = "1.0.0"
