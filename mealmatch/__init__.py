"""
MealMatch core: preference ledger, exactly-once match detection, realtime
fan-out and best-effort partner notifications for paired actors.
"""

__version__ = "1.0.0"
