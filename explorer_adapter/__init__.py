"""Test explorer adapter: discovers, runs and debugs unittest-style tests."""
