"""Marketplace order, wallet and payment lifecycle service."""

__version__ = "1.0.0"
