"""Tests for task scheduling."""
