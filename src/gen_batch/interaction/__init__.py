"""Interaction layers that drive the generation service."""
