"""Tests for blocktree."""
