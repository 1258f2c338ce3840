"""
Configuration loading and logging setup.
"""
