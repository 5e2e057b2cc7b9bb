"""IG Validator Test Suite.

Unit tests run against a local package cache built in a temporary folder
and fake terminology and registry services, so they need no network.
"""
