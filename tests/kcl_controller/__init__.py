"""Tests for the KclInstance controller."""
