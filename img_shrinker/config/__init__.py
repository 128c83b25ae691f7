"""Configuration for a shrink run."""
