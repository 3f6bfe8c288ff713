"""Tag client test suite."""
