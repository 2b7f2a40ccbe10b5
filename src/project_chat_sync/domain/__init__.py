"""Domain models, timestamps and errors."""
