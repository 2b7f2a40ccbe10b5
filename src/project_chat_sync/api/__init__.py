"""Local HTTP surface."""
