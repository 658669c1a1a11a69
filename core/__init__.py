"""Core domain logic for predictive cluster health.

This package contains the business logic and domain models,
isolated from collectors and AI providers for easy testing and reasoning.
"""
