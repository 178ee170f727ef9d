"""Job engine and runner."""
