"""HTTP API for piflow."""
