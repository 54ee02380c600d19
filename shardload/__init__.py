"""
Sharded read-only load generator for PostgreSQL-compatible clusters.
"""

__version__ = "0.1.0"
