"""cron-runner - lifecycle supervisor for remote CI runners."""

__version__ = "0.3.0"
