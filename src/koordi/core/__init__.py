"""Cross-cutting runtime concerns (logging)."""
