"""Cross-cutting helpers (logging, tracing)."""
