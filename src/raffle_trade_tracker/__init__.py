"""Raffle trade tracker - Sui token trade ingestion and raffle ticket reconciliation."""

__version__ = "0.1.0"
