"""Tests for the billing engine."""
