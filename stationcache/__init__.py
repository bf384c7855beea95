"""Interruption-safe incremental station database builder"""

__version__ = '1.0.0'
