"""Shopwatch — catalog health watchdog with cache remediation and alerting."""

__version__ = "0.1.0"
