"""Test suite for Anchor."""
