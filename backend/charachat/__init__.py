"""Character chat backend: ingestion, retrieval, prompt composition and guarded generation"""
