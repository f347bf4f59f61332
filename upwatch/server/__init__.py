"""Upwatch server: check scheduler, incident engine and quota gate."""
