"""FastAPI application for Household Ledger."""
