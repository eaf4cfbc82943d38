"""Clients for the upstream book, AI and email APIs."""
