"""Media portal background job queue and watchlist sync service."""

__version__ = "0.1.0"
