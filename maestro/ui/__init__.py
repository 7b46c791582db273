"""Terminal and web front ends for the orchestrator."""
