"""
Core modules for the cost statusline.

This package contains transcript parsing, pricing, usage aggregation,
the local cache and the remote usage client.
"""
