"""
File Ingestion Domain

Watches the sync folder for evidence files and posts them to the
content-addressing backend:
- Generic files -> fingerprinted (sha256, md5, blake3) and uploaded as-is
- Signed bundles (ProofMode zips) -> one upload per verified asset
- Web archive bundles (WACZ) -> uploaded with their signed datapackage

Per-file state lives in the file_status table so a restart never
re-uploads a finished file.
"""

__all__ = ["collectors", "processors"]
