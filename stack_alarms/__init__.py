"""Health alarms for services running in Rancher stacks."""

__version__ = "0.1.0"
