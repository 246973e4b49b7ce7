"""careslot - provider availability, slot booking and waitlist assignment."""

__version__ = "0.1.0"
