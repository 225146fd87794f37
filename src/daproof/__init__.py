# src/daproof/__init__.py
"""
Data availability proof verifier.

Watches submissions uploaded by trusted submitters, checks their timestamp
receipts, and replays the signed requests against historical chain state.
"""

__version__ = "0.1.0"
