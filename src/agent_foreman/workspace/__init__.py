"""Workspace provisioning for agent runs."""
