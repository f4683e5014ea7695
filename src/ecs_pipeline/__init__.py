"""
Declarative ECS deployment pipelines.

Loads a YAML pipeline description and runs its steps against AWS:
- ECR authentication and image push
- Task definition rendering and registration
- ECS service update with stability polling
- Public endpoint discovery for the running task
"""

__version__ = "0.1.0"
