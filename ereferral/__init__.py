"""Referral, appointment and billing compliance layer for the Central System interchange."""

__version__ = "0.1.0"
