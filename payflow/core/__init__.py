"""Core payment processing logic."""
