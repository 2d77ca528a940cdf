"""Object stores backing the artifact cache and the public distribution."""
