"""Tests for flux-kcl."""
