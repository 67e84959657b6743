"""Extralive chat: an aiohttp server, shared message models and client helpers."""

__version__ = "0.1.0"
__all__ = ["__version__"]