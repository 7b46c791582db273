"""Status API."""
