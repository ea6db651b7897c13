"""Test and demo doubles for the remote registry."""
