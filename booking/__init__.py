"""Appointment reconciliation and notification dispatch."""
