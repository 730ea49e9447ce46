"""Core modules (logging, errors, encryption, monitoring)."""
