"""Command line tool for rendering and reconciling KclInstance objects."""
