"""Post-analysis processing: embeddings and topic clustering."""
