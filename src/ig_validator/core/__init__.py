"""Core building blocks shared across the validator."""
