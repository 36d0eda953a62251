"""Payment gateway client and webhook ingestion."""
