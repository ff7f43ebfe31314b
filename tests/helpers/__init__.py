"""Test helpers for dotr."""
