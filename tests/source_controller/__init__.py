"""Tests for the source controller."""
