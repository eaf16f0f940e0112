"""Command-line tools built on bsptools."""
