"""Pulito: safe disk space reclaimer for Linux."""
