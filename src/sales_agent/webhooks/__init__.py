"""Inbound webhook verification and ingestion."""
