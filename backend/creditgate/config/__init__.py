"""Runtime settings and plan catalog."""
