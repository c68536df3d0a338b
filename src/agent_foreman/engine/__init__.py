"""Task orchestration engine: supervision, scheduling, fan-out and reconciliation."""
