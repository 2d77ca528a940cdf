"""Pipeline plumbing: errors, retries, hashing, parallelism, orchestration."""
