"""Queue workers for session runs."""
