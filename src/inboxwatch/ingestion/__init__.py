"""Mail source ingestion."""
