"""Core domain layer: configuration, persistence, locking and services."""
