"""Pulito core engine components."""
