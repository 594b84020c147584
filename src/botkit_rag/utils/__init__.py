"""Shared utilities: errors, logging and vector math."""
