"""Checkout orchestration service for trekking tour bookings."""
