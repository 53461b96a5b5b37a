"""Job orchestration: input detection, prerequisites, steps."""
