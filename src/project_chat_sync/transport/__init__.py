"""Transports to the chat backend."""
