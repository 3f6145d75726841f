"""Deploy task definitions and services to Amazon ECS."""

__version__ = "0.1.0"
