"""Pure job-system types (no I/O)."""
