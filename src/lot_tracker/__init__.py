"""Lot Tracker - production lot tracking, routing and order reconciliation."""

__version__ = "0.1.0"
