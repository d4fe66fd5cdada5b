"""Pitch records, upload flow and entitlement rules."""
