"""FlatPage utility modules."""
