"""Session credential verification."""
