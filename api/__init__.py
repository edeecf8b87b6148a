"""Skill Router HTTP API."""
