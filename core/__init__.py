"""Shared models, text and calendar utilities, and the recurrence detector."""
