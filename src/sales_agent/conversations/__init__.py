"""Customers, conversations, business rules and the escalation policy."""
