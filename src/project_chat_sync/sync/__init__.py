"""Synchronization components."""
