"""Tripgate: trip expense API gateway with deferred webhook timers."""
