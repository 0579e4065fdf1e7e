"""
API Service - HTTP facade over the latest readings
"""

from .server import ApiServer

__all__ = ["ApiServer"]
