"""Tests for the cluster clients."""
