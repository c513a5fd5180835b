"""Console rendering for the command line interface."""
