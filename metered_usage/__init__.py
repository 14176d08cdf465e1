"""
Metered usage reporting.

Reconciles premium quota, team membership and monthly invoice feeds into
one usage snapshot.
"""

__version__ = "0.1.0"
