"""Utility helpers (JSON persistence under the storage root)."""
