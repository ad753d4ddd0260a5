"""Reasoning-service adapters.

Providers are imported lazily by the framework factory so that only the
selected SDK is loaded.
"""
