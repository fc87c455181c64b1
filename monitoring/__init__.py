"""Anomaly detection over ledger transactions."""
