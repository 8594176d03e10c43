"""Outbound clients used by the API routers."""
