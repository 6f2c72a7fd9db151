"""Domain models for websets, jobs, providers and rate limits."""
