"""Prometheus metrics module."""
