"""Online category learning and suggestion."""
