"""Tests for the live quiz engine and server."""
