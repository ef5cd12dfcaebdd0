"""Batch dispatch and submission-monitoring engine."""
