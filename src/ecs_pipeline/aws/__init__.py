"""AWS integration: clients, registry, task definitions, deployment status."""
