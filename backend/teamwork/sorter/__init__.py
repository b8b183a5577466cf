"""Work queue, distribution engine and assignment claims."""
