"""Remote execution over SSH and the per-project remote lock."""
