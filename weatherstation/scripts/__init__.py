"""Command-line maintenance tools for the weather station database."""
