"""Configuration, database and logging shared across the service."""
