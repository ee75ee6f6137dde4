"""dataupgrade command-line interface."""
