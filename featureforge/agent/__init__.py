"""Agent loop, tool dispatch, human feedback and memory records."""
