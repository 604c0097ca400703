"""CLI commands for loopguard."""
