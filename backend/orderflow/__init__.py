"""
orderflow: order lifecycle orchestration backend.

Maps order statuses onto pipeline phases, drives validated status transitions
and keeps concurrent edit sessions consistent through a realtime change feed.
"""

__version__ = "1.0.0"
