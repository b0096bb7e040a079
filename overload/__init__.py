"""
Overload: adaptive concurrency-ramp load testing for single SQL statements.
"""

__version__ = "0.1.0"
