"""
Storage layer: data models and the SQLite-backed persistent cache.
"""
