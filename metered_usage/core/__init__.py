"""
Core modules for metered usage.

This package contains invoice line classification, monthly aggregation,
team/individual quota resolution and currency conversion.
"""
