"""Browser form testing service: ad hoc runs, recurring schedules and analytics."""
__version__ = "1.0.0"
