"""Shared builders for CPAM tests."""
