"""Core domain logic for bedside vital-sign monitoring.

This package contains the business logic and domain models,
isolated from external dependencies for easy testing and reasoning.
"""
