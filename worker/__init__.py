"""Worker process: execution loop and query executor."""
