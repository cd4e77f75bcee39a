"""Ingestion: transport subscriptions and payload normalisation."""
