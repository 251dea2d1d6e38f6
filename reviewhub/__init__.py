"""Review ingestion and analytics for business locations."""

__version__ = "0.1.0"
