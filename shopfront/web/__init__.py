"""Models, business operations and the HTTP API."""
