"""Command-line interface for callbridge."""
