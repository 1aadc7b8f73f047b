"""mmd-serve command-line entry point."""
