"""
File Ingestion Processors

Shared processing utilities for file ingestion:
- hasher.py - Single-pass multi-digest fingerprinting and media type sniffing
- bundles.py - Signed bundle / WACZ structure verification
- classifier.py - Format dispatch and metadata records
- status_store.py - Persistent per-file status transitions
- uploader.py - Streaming multipart upload to the webhook server
"""
