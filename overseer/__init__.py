"""
overseer: cron-scheduled jobs with retries, fallbacks and timeouts.
"""

__version__ = "0.1.0"
