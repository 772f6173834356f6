"""Test support code: in-memory cluster fakes."""
