"""Suggest new calendar events from existing events and reminders."""
