"""Booking slot availability and scheduling engine for a services marketplace."""
