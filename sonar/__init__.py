"""
Sonar - Social Listening Scan Pipeline

This package schedules monitor scans across external platforms, filters and
scores the posts it finds, and gates downstream AI analysis behind per-plan
rate and spend budgets.
"""

__version__ = "0.1.0"
