"""Command line interface for hscache."""
