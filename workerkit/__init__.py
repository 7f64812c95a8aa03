"""Service application framework with cron, Redis key-expiry and task-queue workers."""

__version__ = "0.1.0"