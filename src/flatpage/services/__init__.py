"""FlatPage services."""
