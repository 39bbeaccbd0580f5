"""CPAM - Contract Price Adjustment Mechanism calculation core."""

__version__ = "0.1.0"
