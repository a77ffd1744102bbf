"""Domain-free plumbing shared by the API clients: HTTP base client, resilience, logging."""
