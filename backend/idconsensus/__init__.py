"""Identification consensus and categorization engine."""
