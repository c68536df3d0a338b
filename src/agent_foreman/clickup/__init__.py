"""ClickUp integration: the external task source."""
