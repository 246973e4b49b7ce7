"""Relational storage for providers, appointments and the waitlist."""
