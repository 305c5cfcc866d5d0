"""drcore: disaster-recovery orchestration core for geo-replicated database pairs."""

__version__ = "0.4.0"
