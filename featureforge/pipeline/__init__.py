"""Pipeline phases and the master feature-run orchestrator."""
