"""Shrink planning, guest-side preparation and the shrink pipeline."""
