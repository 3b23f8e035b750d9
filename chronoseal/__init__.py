"""Owner-side encryption and searchable indexing for time-stamped records."""

__version__ = "0.1.0"
