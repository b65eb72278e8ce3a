"""
Feature modules live under this package.

Each module owns its models, service layer and routes, while reusing platform
primitives (auth, audit, errors, DB session).
"""
