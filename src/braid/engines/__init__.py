"""Code-agent engine adapters."""
