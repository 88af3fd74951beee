"""Edge Gateway - denylists, per-IP rate limiting and a fixed-upstream reverse proxy."""

__version__ = "1.0.0"
