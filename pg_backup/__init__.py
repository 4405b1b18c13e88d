"""Dump a PostgreSQL database and upload it to Cloudflare R2."""

__version__ = "0.1.0"
