"""Outbound delivery and workflow-automation collaborators."""
