from .schedule import Schedule
from .test_run import TestRun

__all__ = ["Schedule", "TestRun"]
