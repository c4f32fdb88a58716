"""Request-level plumbing: session tokens, tenant context and ownership checks."""
