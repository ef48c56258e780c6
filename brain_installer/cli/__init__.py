"""Command line interface for brain-installer."""
