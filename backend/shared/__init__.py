"""Helpers shared across the Availo lambdas."""
