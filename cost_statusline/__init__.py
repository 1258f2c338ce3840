"""
Cost statusline.

Live session, 5-hour window and daily cost for AI coding-assistant sessions.
"""

__version__ = "0.1.0"
