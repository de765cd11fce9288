"""Document management API: object storage for file bytes, SQL for metadata."""
