"""
Settings and logging configuration.
"""
