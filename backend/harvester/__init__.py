"""Iterative search-and-extract harvesting of structured records from a message store."""
