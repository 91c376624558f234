"""Automated market-signal to social post pipeline."""
