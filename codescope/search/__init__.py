"""Query understanding, candidate collection, ranking and result shaping."""
