"""Configuration, logging, metrics and error types."""
