"""Read-only clients for upstream services: GitHub and the CI artifact CDN."""
