"""
Local SQLite caches for membership and exchange rates.
"""
