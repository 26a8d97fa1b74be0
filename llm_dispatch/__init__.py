"""Role-based AI completion dispatch with retries, failover and stream recovery."""

__version__ = "0.1.0"
