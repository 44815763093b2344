"""Clients for external services (store server, geocoding)."""
