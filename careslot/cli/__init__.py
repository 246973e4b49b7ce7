"""Command-line interface for careslot."""
