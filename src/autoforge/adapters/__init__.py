"""Concrete implementations of provider interfaces.

- deploy: deployment providers, registered by name on import
- reasoning: reasoning-service clients, imported lazily per provider
"""
